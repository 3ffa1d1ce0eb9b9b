import csv
import io
import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

logger = logging.getLogger(__name__)

# The "Corpus Writer". Collects (user, assistant) pairs for later fine-tuning jobs.

CSV_HEADER = ["user", "assistant"]

def is_csv(path: Union[str, Path]) -> bool:
    return str(path).lower().endswith(".csv")

def _messages(user: str, assistant: str, system: Optional[str] = None) -> List[Dict[str, str]]:
    messages = []
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": user})
    messages.append({"role": "assistant", "content": assistant})
    return messages

def jsonl_line(user: str, assistant: str, system: Optional[str] = None) -> str:
    return json.dumps({"messages": _messages(user, assistant, system)}, ensure_ascii=False)

def append_corpus(path: Union[str, Path], user: str, assistant: str, system: Optional[str] = None):
    """
    Appends one exchange to the training corpus.

    - `.csv`: a `user,assistant` row. The header is written when the file is new or empty.
    - anything else: one JSON line `{"messages": [...]}`, with the system
      instruction first when given.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if is_csv(path):
        is_new_file = not path.exists() or path.stat().st_size == 0
        with open(path, "a", encoding="utf-8", newline="") as f:
            writer = csv.writer(f)
            if is_new_file:
                writer.writerow(CSV_HEADER)
            writer.writerow([user, assistant])
    else:
        with open(path, "a", encoding="utf-8") as f:
            f.write(jsonl_line(user, assistant, system) + "\n")

    logger.debug(f"📝 Appended an exchange to the corpus at {path}")

def corpus_to_jsonl(path: Union[str, Path], system: Optional[str] = None) -> str:
    """
    Returns the corpus as JSON-lines text ready for upload.
    CSV corpora are converted (header skipped); other files are returned as they are.

    Raises ValueError when a CSV row does not have exactly two columns.
    """
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    if not is_csv(path):
        return text

    lines = []
    reader = csv.reader(io.StringIO(text))
    for row_number, row in enumerate(reader, start=1):
        if row_number == 1 and row == CSV_HEADER:
            continue
        if not row:
            continue
        if len(row) != 2:
            raise ValueError(f"{path}:{row_number}: expected 2 columns (user, assistant), got {len(row)}")
        lines.append(jsonl_line(row[0], row[1], system))

    logger.info(f"🔄 Converted {len(lines)} row(s) of {path} to JSON lines.")
    return "".join(line + "\n" for line in lines)
