"""Tests for SpeechContext wiring and lifecycle."""
import asyncio
from pathlib import Path

import pytest

from speechflow.context import SpeechContext, build_backend
from speechflow.core.config import ConfigValidationError, Settings, SpeechflowConfig
from speechflow.speech.gateway import HttpSpeechGateway, SpeechGateway, TranscriptResult
from speechflow.storage import FileBackend, MemoryBackend

ROOT = Path(__file__).parent.parent


class EchoGateway(SpeechGateway):
    def __init__(self):
        self.closed = False

    async def transcribe(self, audio, filename, mime_type):
        return TranscriptResult(transcript="ok")

    async def synthesize(self, text, model_id):
        return text.encode()

    async def voice_models(self):
        return []

    async def aclose(self):
        self.closed = True


def _config(raw):
    return SpeechflowConfig.from_settings(Settings(raw=raw))


class TestBackends:

    def test_default_memory(self):
        assert isinstance(build_backend(SpeechflowConfig()), MemoryBackend)

    def test_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv("SPEECHFLOW_STORAGE_DIR", raising=False)
        backend = build_backend(_config({"storage": {"backend": "file", "base_dir": str(tmp_path)}}))
        assert isinstance(backend, FileBackend)
        assert backend.base_dir == tmp_path

    def test_none(self):
        assert build_backend(_config({"storage": {"backend": "none"}})) is None


class TestLifecycle:

    def test_async_context_manager(self):
        gateway = EchoGateway()

        async def main():
            async with SpeechContext(gateway=gateway) as ctx:
                assert ctx.running
                assert ctx.coordinator.running
                audio = await ctx.service.synthesize("hi")
            return ctx, audio

        ctx, audio = asyncio.run(main())

        assert audio == b"hi"
        assert not ctx.running
        assert not ctx.coordinator.running
        assert gateway.closed

    def test_close_idempotent(self):
        ctx = SpeechContext(gateway=EchoGateway())

        async def main():
            await ctx.start()
            await ctx.start()
            await ctx.close()
            await ctx.close()

        asyncio.run(main())
        assert not ctx.running

    def test_close_cancels_live_operations(self):
        ctx = SpeechContext(gateway=EchoGateway())

        async def main():
            await ctx.start()
            admission = ctx.coordinator.admit("synthesize")
            await ctx.close()
            return admission

        admission = asyncio.run(main())
        assert admission.token.reason == "shutdown"

    def test_default_gateway_is_http(self):
        ctx = SpeechContext()
        assert isinstance(ctx.gateway, HttpSpeechGateway)
        asyncio.run(ctx.close())


class TestWiring:

    def test_persistence_disabled(self):
        ctx = SpeechContext(_config({"storage": {"backend": "none"}}), gateway=EchoGateway())

        assert asyncio.run(ctx.service.synthesize("hi")) == b"hi"
        assert ctx.store.enabled is False
        assert ctx.cache.entries() == []
        assert ctx.ledger.today().synthesize.count == 1

    def test_backend_override(self):
        backend = MemoryBackend()
        ctx = SpeechContext(gateway=EchoGateway(), backend=backend)
        asyncio.run(ctx.service.synthesize("hi"))
        assert any(k.startswith("tts_cache_") for k in backend.keys())

    def test_contexts_are_independent(self):
        a = SpeechContext(gateway=EchoGateway())
        b = SpeechContext(gateway=EchoGateway())
        asyncio.run(a.service.synthesize("hi"))

        assert a.ledger.today().synthesize.count == 1
        assert b.ledger.today().synthesize.count == 0

    def test_purge(self):
        ctx = SpeechContext(gateway=EchoGateway())
        assert ctx.purge() == {"store": 0, "cache": 0, "usage": 0}

    def test_from_settings(self):
        ctx = SpeechContext.from_settings(
            Settings(raw={"concurrency": {"max_concurrent": 7}}), gateway=EchoGateway(),
        )
        assert ctx.coordinator.max_concurrent == 7

    def test_from_settings_invalid(self):
        with pytest.raises(ConfigValidationError):
            SpeechContext.from_settings(Settings(raw={"cache": {"max_entries": 0}}))

    def test_from_yaml_sample(self):
        ctx = SpeechContext.from_yaml(str(ROOT / "config" / "settings.yaml"), gateway=EchoGateway())
        assert ctx.config.concurrency.max_concurrent == 3
        assert ctx.config.cache.default_format == "mp3"
