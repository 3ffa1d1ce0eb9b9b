import asyncio
import json
from unittest.mock import AsyncMock, patch

import httpx
import openai
import pytest

from avatar_connect.core.event_log import Datum
from avatar_connect.processors.base_processor import ProcessorConfigError
from avatar_connect.processors.fine_tuning import append_corpus
from avatar_connect.processors.openai_chat import OpenAIChatProcessor, make_request_template

from conftest import FakeClock, conf, contents_on, make_chat_client


def chat(dispatcher, client=None, clock=None, **fields):
    fields.setdefault("channel_to", "ai")
    processor = OpenAIChatProcessor(
        conf(id="chat", feature="openai-chat", channel_from="user", **fields),
        dispatcher,
        client=client or make_chat_client(),
        clock=clock or FakeClock(),
    )
    dispatcher.register(processor)
    return processor


def push_and_join(dispatcher, processor, *items):
    async def scenario():
        pushed = []
        for channel, content, is_final in items:
            pushed.append(await dispatcher.push(channel, content, is_final=is_final))
            await processor.join()
        return pushed

    return asyncio.run(scenario())


def test_non_final_input_never_calls_the_model(dispatcher):
    client = make_chat_client()
    processor = chat(dispatcher, client=client)

    push_and_join(dispatcher, processor, ("user", "hel", False), ("user", "hello", False))

    client.chat.completions.create.assert_not_awaited()
    assert contents_on(dispatcher.log, "ai") == []


def test_ignore_regex_blocks_reply(dispatcher):
    client = make_chat_client()
    processor = chat(dispatcher, client=client, ignore_regex_pattern="^/")

    push_and_join(dispatcher, processor, ("user", "  /skip this  ", True))

    client.chat.completions.create.assert_not_awaited()
    assert contents_on(dispatcher.log, "ai") == []


def test_reply_is_finalized_and_tagged(dispatcher):
    client = make_chat_client("Hello!\nHow are you?\t")
    processor = chat(dispatcher, client=client)

    trigger, = push_and_join(dispatcher, processor, ("user", "hi", True))

    replies = [d for d in dispatcher.log if d.channel == "ai"]
    assert len(replies) == 1
    assert replies[0].content == "Hello!How are you?"
    assert replies[0].flags == {Datum.FLAG_IS_FINAL, f"openai-chat(user:{trigger.id})"}


def test_min_interval_throttles_unforced_replies(dispatcher):
    clock = FakeClock(1000.0)
    client = make_chat_client()
    processor = chat(dispatcher, client=client, clock=clock, min_interval_in_secs=5,
                     force_activate_regex_pattern="^!")

    async def scenario():
        await dispatcher.push("user", "first", is_final=True)
        await processor.join()
        clock.now = 1002.0
        await dispatcher.push("user", "second", is_final=True)
        await processor.join()
        clock.now = 1006.0
        await dispatcher.push("user", "third", is_final=True)
        await processor.join()

    asyncio.run(scenario())
    assert client.chat.completions.create.await_count == 2
    assert len(contents_on(dispatcher.log, "ai")) == 2


def test_min_interval_without_force_pattern_does_not_throttle(dispatcher):
    clock = FakeClock(1000.0)
    client = make_chat_client()
    processor = chat(dispatcher, client=client, clock=clock, min_interval_in_secs=5)

    async def scenario():
        await dispatcher.push("user", "first", is_final=True)
        await processor.join()
        clock.now = 1002.0
        await dispatcher.push("user", "second", is_final=True)
        await processor.join()

    asyncio.run(scenario())
    assert client.chat.completions.create.await_count == 2
    assert len(contents_on(dispatcher.log, "ai")) == 2


def test_force_regex_bypasses_throttle(dispatcher):
    clock = FakeClock(0.0)
    client = make_chat_client()
    processor = chat(dispatcher, client=client, clock=clock, min_interval_in_secs=60,
                     force_activate_regex_pattern="(?i)avatar")

    push_and_join(
        dispatcher, processor,
        ("user", "hello", True),
        ("user", "hey Avatar, look", True),
        ("user", "anyone?", True),
    )
    assert client.chat.completions.create.await_count == 2


def test_context_window_and_roles(dispatcher):
    client = make_chat_client("a2")
    processor = chat(dispatcher, client=client, memory_capacity=3, custom_instructions="Be brief.",
                     model="test-model", temperature=0.5)

    async def scenario():
        await dispatcher.push("user", "u1", is_final=True)
        await dispatcher.push("ai", "a1", is_final=True)
        await dispatcher.push("user", "draft")
        await dispatcher.push("scene", "not in context", is_final=True)
        await dispatcher.push("user", "u2", is_final=True)
        await processor.join()

    asyncio.run(scenario())

    last_call, = [c for c in client.chat.completions.create.await_args_list
                  if c.kwargs["messages"][-1]["content"] == "u2"]
    assert last_call.kwargs["model"] == "test-model"
    assert last_call.kwargs["temperature"] == 0.5
    assert last_call.kwargs["messages"] == [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "u1"},
        {"role": "assistant", "content": "a1"},
        {"role": "user", "content": "u2"},
    ]


def test_api_failure_is_logged_not_raised(dispatcher, caplog):
    client = make_chat_client()
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    client.chat.completions.create.side_effect = openai.APIConnectionError(request=request)
    processor = chat(dispatcher, client=client)

    push_and_join(dispatcher, processor, ("user", "hi", True))
    assert contents_on(dispatcher.log, "ai") == []
    assert "Completion request failed" in caplog.text


def test_reply_is_appended_to_the_corpus(dispatcher, tmp_path):
    corpus = tmp_path / "train.jsonl"
    processor = chat(dispatcher, client=make_chat_client("pong"), custom_instructions="Be brief.",
                     fine_tuning=str(corpus))

    push_and_join(dispatcher, processor, ("user", "ping", True))

    line = json.loads(corpus.read_text(encoding="utf-8").splitlines()[0])
    assert line == {"messages": [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "ping"},
        {"role": "assistant", "content": "pong"},
    ]}


def test_corpus_append_runs_off_the_event_loop(dispatcher, tmp_path):
    corpus = tmp_path / "train.jsonl"
    processor = chat(dispatcher, client=make_chat_client("pong"), fine_tuning=str(corpus))

    with patch("avatar_connect.processors.openai_chat.asyncio.to_thread", AsyncMock()) as to_thread:
        push_and_join(dispatcher, processor, ("user", "ping", True))

    to_thread.assert_awaited_once_with(append_corpus, str(corpus), "ping", "pong", None)
    assert contents_on(dispatcher.log, "ai") == ["pong"]


def test_request_template_omits_unset_fields():
    template = make_request_template(conf(channel_from="user", max_tokens=64))
    assert template == {"model": "gpt-4o-mini", "max_tokens": 64, "messages": []}


def test_channel_to_is_required(dispatcher):
    with pytest.raises(ProcessorConfigError):
        chat(dispatcher, channel_to=None)


def test_invalid_pattern_is_a_config_error(dispatcher):
    with pytest.raises(ProcessorConfigError):
        chat(dispatcher, ignore_regex_pattern="(")
