import asyncio
from unittest.mock import AsyncMock, patch

import aiohttp
import pytest

from avatar_connect.core.event_log import Datum
from avatar_connect.processors import (
    FEATURES,
    BouyomichanProcessor,
    CommandProcessor,
    GasTranslationProcessor,
    ProcessorConfigError,
    UnknownFeatureError,
    build_processors,
)

from conftest import conf, contents_on


def test_registry_covers_every_feature():
    assert set(FEATURES) == {"command", "modify", "openai-chat", "gas-translation", "bouyomichan"}


def test_build_processors_skips_bad_records(dispatcher):
    records = [
        conf(id="console", feature="Command", channel_from="user"),
        conf(id="nameless"),
        conf(id="mystery", feature="teleport", channel_from="user"),
        conf(id="no-target", feature="gas-translation", channel_from="user"),
        conf(id="chat", feature="openai-chat", channel_from="user", channel_to="ai", is_enabled=False),
    ]
    client = object()

    built = build_processors(records, dispatcher, options={"openai-chat": {"client": client}})

    assert [p.name for p in built] == ["command:console", "openai-chat:chat"]
    assert dispatcher.processors == built
    assert isinstance(built[0], CommandProcessor)
    assert built[1].client is client
    assert built[1].enabled is False


def test_build_processors_strict_raises(dispatcher):
    with pytest.raises(UnknownFeatureError):
        build_processors([conf(feature="teleport", channel_from="user")], dispatcher, strict=True)
    with pytest.raises(ProcessorConfigError):
        build_processors([conf(feature="command")], dispatcher, strict=True)


# --- gas-translation ---

def translator(dispatcher, **fields):
    processor = GasTranslationProcessor(
        conf(id="tr", feature="gas-translation", channel_from="ja", channel_to="en",
             script_id="SCRIPT", translate_from="ja", translate_to="en", **fields),
        dispatcher,
    )
    dispatcher.register(processor)
    return processor


def test_translation_url_template(dispatcher):
    processor = translator(dispatcher)
    assert processor.url_base == (
        "https://script.google.com/macros/s/SCRIPT/exec?trans_sourcelang=ja&target=en&text="
    )


def test_translation_emits_tagged_result(dispatcher):
    processor = translator(dispatcher)

    async def scenario():
        with patch.object(processor, "translate", AsyncMock(return_value="Hello")) as translate:
            await dispatcher.push("ja", "partial")
            datum = await dispatcher.push("ja", "こんにちは", is_final=True)
            await processor.join()
        return datum, translate

    datum, translate = asyncio.run(scenario())
    translate.assert_awaited_once_with("こんにちは")
    result, = [d for d in dispatcher.log if d.channel == "en"]
    assert result.content == "Hello"
    assert result.flags == {Datum.FLAG_IS_FINAL, f"gas-translation(ja:{datum.id},ja/en)"}


def test_translation_of_incomplete_input_when_enabled(dispatcher):
    processor = translator(dispatcher, process_incomplete_input=True)

    async def scenario():
        with patch.object(processor, "translate", AsyncMock(return_value="Hel")):
            await dispatcher.push("ja", "こん")
            await processor.join()

    asyncio.run(scenario())
    assert contents_on(dispatcher.log, "en") == ["Hel"]


def test_translation_failure_emits_nothing(dispatcher):
    processor = translator(dispatcher)

    async def scenario():
        with patch.object(processor, "translate", AsyncMock(side_effect=aiohttp.ClientError("down"))):
            await dispatcher.push("ja", "こんにちは", is_final=True)
            await processor.join()

    asyncio.run(scenario())
    assert contents_on(dispatcher.log, "en") == []


def test_translation_requires_languages(dispatcher):
    with pytest.raises(ProcessorConfigError):
        GasTranslationProcessor(
            conf(feature="gas-translation", channel_from="ja", channel_to="en", script_id="S"), dispatcher
        )


# --- bouyomichan ---

def test_bouyomichan_requires_existing_executable(dispatcher, tmp_path):
    with pytest.raises(ProcessorConfigError):
        BouyomichanProcessor(conf(feature="bouyomichan", channel_from="ai",
                                  remote_talk_path=str(tmp_path / "RemoteTalk.exe")), dispatcher)


def test_bouyomichan_args(dispatcher, tmp_path):
    exe = tmp_path / "RemoteTalk.exe"
    exe.write_text("")
    processor = BouyomichanProcessor(
        conf(feature="bouyomichan", channel_from="ai", remote_talk_path=str(exe), speed=120, voice=2),
        dispatcher,
    )
    assert processor.build_args("hi") == ["/T", "hi", "120", "-1", "-1", "2"]

    remote = BouyomichanProcessor(
        conf(feature="bouyomichan", channel_from="ai", remote_talk_path=str(exe), address="10.0.0.2", port=50001),
        dispatcher,
    )
    assert remote.build_args("hi")[-2:] == ["10.0.0.2", "50001"]


def test_bouyomichan_speaks_finalized_input_only(dispatcher, tmp_path):
    exe = tmp_path / "RemoteTalk.exe"
    exe.write_text("")
    processor = BouyomichanProcessor(conf(feature="bouyomichan", channel_from="ai", remote_talk_path=str(exe)),
                                     dispatcher)
    dispatcher.register(processor)

    async def scenario():
        with patch.object(processor, "talk", AsyncMock()) as talk:
            await dispatcher.push("ai", "draft")
            await dispatcher.push("ai", "done", is_final=True)
            await processor.join()
        return talk

    talk = asyncio.run(scenario())
    talk.assert_awaited_once_with(["/T", "done", "-1", "-1", "-1", "0"])
