"""
Tests for SynthesisClient (the Polly wrapper).

Tests cover:
- initialize() with and without credentials
- Region fallback to us-east-1
- Factory failures leave the client unavailable
- synthesize() request parameters
- Deadline enforcement, and closing a response that arrives after it
- Remote errors classified
- disable() / dispose()
"""
import asyncio

import pytest
from botocore.exceptions import EndpointConnectionError

from narration_ms.core.config import PollyConfig, SynthesisConfig
from narration_ms.narration.errors import (
    ClientUnavailableError,
    ErrorKind,
    NarrationError,
    SynthesisTimeoutError,
)
from narration_ms.narration.synthesis import ClientState, SynthesisClient

from conftest import FakePollyClient


def creds(**kw) -> PollyConfig:
    values = {"access_key_id": "AKIATEST", "secret_access_key": "secret", "region": "eu-west-1"}
    values.update(kw)
    return PollyConfig(**values)


def client_for(fake, polly=None, timeout_s=10.0) -> SynthesisClient:
    return SynthesisClient(
        polly or creds(),
        SynthesisConfig(timeout_s=timeout_s),
        client_factory=lambda p, s: fake,
    )


class TestInitialize:
    """Tests for the client lifecycle."""

    def test_ready_with_credentials(self):
        client = client_for(FakePollyClient())
        assert client.state == ClientState.UNINITIALIZED
        assert client.initialize()
        assert client.is_ready
        assert client.state == ClientState.READY

    def test_missing_credentials(self):
        client = client_for(FakePollyClient(), creds(secret_access_key=""))
        assert not client.initialize()
        assert not client.is_ready
        assert not client.credentials_configured

    def test_blank_region_falls_back(self):
        seen = {}

        def factory(polly, synthesis):
            seen["region"] = polly.region
            return FakePollyClient()

        client = SynthesisClient(creds(region=""), SynthesisConfig(), client_factory=factory)
        assert client.initialize()
        assert client.region == "us-east-1"
        assert seen["region"] == "us-east-1"

    def test_factory_error_is_logged_not_raised(self):
        def factory(polly, synthesis):
            raise ValueError("Invalid endpoint: https://polly..amazonaws.com")

        client = SynthesisClient(creds(), SynthesisConfig(), client_factory=factory)
        assert not client.initialize()
        assert client.state == ClientState.UNINITIALIZED

    def test_reinitialize_with_new_config(self):
        client = client_for(FakePollyClient(), creds(access_key_id=""))
        assert not client.initialize()
        assert client.initialize(creds(access_key_id="AKIANEW"))
        assert client.polly.access_key_id == "AKIANEW"

    def test_disable_and_dispose(self):
        client = client_for(FakePollyClient())
        client.initialize()

        client.disable("invalid security token")
        assert client.state == ClientState.DISABLED
        assert client.disabled_reason == "invalid security token"
        assert not client.is_ready

        client.dispose()
        assert client.state == ClientState.UNINITIALIZED
        assert client.disabled_reason is None


class TestSynthesize:
    """Tests for synthesize()."""

    def test_request_parameters(self):
        fake = FakePollyClient()
        client = client_for(fake, creds(voice_id="Amy", engine="standard"))
        client.initialize()

        body = asyncio.run(client.synthesize("Hello there."))

        assert body is fake.bodies[0]
        assert fake.calls == [{
            "Text": "Hello there.",
            "VoiceId": "Amy",
            "OutputFormat": "mp3",
            "Engine": "standard",
        }]

    def test_not_ready_raises_without_call(self):
        fake = FakePollyClient()
        client = client_for(fake)

        with pytest.raises(ClientUnavailableError):
            asyncio.run(client.synthesize("Hello"))
        assert fake.calls == []

    def test_deadline(self):
        fake = FakePollyClient(delay=0.5)
        client = client_for(fake, timeout_s=0.05)
        client.initialize()

        with pytest.raises(SynthesisTimeoutError) as exc_info:
            asyncio.run(client.synthesize("Slow"))
        assert exc_info.value.kind == ErrorKind.TIMEOUT

    def test_late_response_body_is_closed(self):
        fake = FakePollyClient(delay=0.2)
        client = client_for(fake, timeout_s=0.05)
        client.initialize()

        async def go():
            with pytest.raises(SynthesisTimeoutError):
                await client.synthesize("Slow")
            for _ in range(100):
                if fake.bodies and fake.bodies[0].closed:
                    break
                await asyncio.sleep(0.02)

        asyncio.run(go())
        assert len(fake.bodies) == 1
        assert fake.bodies[0].closed

    def test_remote_errors_classified(self):
        fake = FakePollyClient(error=EndpointConnectionError(endpoint_url="https://polly.eu-west-1.amazonaws.com"))
        client = client_for(fake)
        client.initialize()

        with pytest.raises(NarrationError) as exc_info:
            asyncio.run(client.synthesize("Hello"))
        assert exc_info.value.kind == ErrorKind.NETWORK
        assert isinstance(exc_info.value.__cause__, EndpointConnectionError)
