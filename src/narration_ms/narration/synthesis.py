"""
AWS Polly synthesis client.

Wraps a boto3 Polly client with an explicit lifecycle:

    UNINITIALIZED --initialize()--> READY --credentials failure--> DISABLED
                                      ^                               |
                                      +---------initialize()----------+

initialize() never raises: missing credentials or a client that cannot be
built are logged and leave the client unavailable. synthesize() runs the
blocking boto3 call on a worker thread, raced against the request deadline,
and returns the raw AudioStream body for the StreamAssembler.
"""
from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Callable, Dict, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError

from narration_ms.core.config import Defaults, PollyConfig, SynthesisConfig
from narration_ms.core.logging import debug, error, fail, get_logger, info, success, verbose, warn
from narration_ms.narration.errors import (
    ClientUnavailableError,
    SynthesisTimeoutError,
    classify_exception,
)
from narration_ms.utils.timeit import timeit

_LOG = get_logger("narration-ms.synthesis")


class ClientState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    DISABLED = "disabled"


ClientFactory = Callable[[PollyConfig, SynthesisConfig], Any]


def _discard_late_response(call: "asyncio.Future[Any]") -> None:
    """Close the AudioStream of a response nobody is waiting for any more."""
    if call.cancelled() or call.exception() is not None:
        return
    body = call.result().get("AudioStream")
    if body is not None:
        body.close()
        debug(_LOG, "late_response_closed")


def build_polly_client(polly: PollyConfig, synthesis: SynthesisConfig) -> Any:
    """Return a boto3 Polly client using static credentials."""
    boto_config = BotoConfig(
        region_name=polly.region,
        retries={"max_attempts": 1, "mode": "standard"},
        connect_timeout=synthesis.timeout_s,
        read_timeout=synthesis.timeout_s,
    )
    return boto3.client(
        "polly",
        aws_access_key_id=polly.access_key_id,
        aws_secret_access_key=polly.secret_access_key,
        config=boto_config,
    )


class SynthesisClient:
    """
    One Polly client and its lifecycle state.

    Args:
        polly: Endpoint, voice and credentials.
        synthesis: Deadline and text limits.
        client_factory: Builds the underlying client; defaults to boto3.
    """

    def __init__(
        self,
        polly: Optional[PollyConfig] = None,
        synthesis: Optional[SynthesisConfig] = None,
        client_factory: ClientFactory = build_polly_client,
    ):
        self.polly = polly or PollyConfig()
        self.synthesis = synthesis or SynthesisConfig()
        self._factory = client_factory
        self._client: Any = None
        self._state = ClientState.UNINITIALIZED
        self.disabled_reason: Optional[str] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state == ClientState.READY and self._client is not None

    @property
    def region(self) -> str:
        return self.polly.region

    @property
    def credentials_configured(self) -> bool:
        return self.polly.credentials_configured

    def initialize(self, polly: Optional[PollyConfig] = None) -> bool:
        """
        Build the Polly client.

        Returns:
            True if the client is READY. False (and logged) when credentials
            are missing or the client cannot be built.
        """
        if polly is not None:
            self.polly = polly
        self._client = None
        self.disabled_reason = None
        self._state = ClientState.UNINITIALIZED

        missing = []
        if not self.polly.access_key_id.strip():
            missing.append("access_key_id")
        if not self.polly.secret_access_key.strip():
            missing.append("secret_access_key")
        if missing:
            error(_LOG, "client_init_missing_credentials", missing=",".join(missing))
            return False

        if not self.polly.region.strip():
            warn(_LOG, "client_region_fallback", region=Defaults.POLLY_REGION)
            self.polly.region = Defaults.POLLY_REGION

        try:
            self._client = self._factory(self.polly, self.synthesis)
        except (BotoCoreError, ValueError) as e:
            fail(_LOG, "client_init_failed", exception=type(e).__name__, message=str(e))
            return False

        self._state = ClientState.READY
        success(
            _LOG,
            "client_ready",
            region=self.polly.region,
            voice=self.polly.voice_id,
            engine=self.polly.engine,
        )
        return True

    def disable(self, reason: str) -> None:
        """Refuse all synthesis until the next initialize()."""
        self._state = ClientState.DISABLED
        self._client = None
        self.disabled_reason = reason
        fail(_LOG, "client_disabled", reason=reason)

    def dispose(self) -> None:
        self._client = None
        self._state = ClientState.UNINITIALIZED
        self.disabled_reason = None
        info(_LOG, "client_disposed")

    # =========================================================================
    # Synthesis
    # =========================================================================

    def request_params(self, text: str) -> Dict[str, str]:
        return {
            "Text": text,
            "VoiceId": self.polly.voice_id,
            "OutputFormat": self.polly.output_format,
            "Engine": self.polly.engine,
        }

    async def synthesize(self, text: str) -> Any:
        """
        Request speech for ``text`` and return the AudioStream body.

        Raises:
            ClientUnavailableError: The client is not READY.
            NarrationError: Any remote failure, already classified.
        """
        if not self.is_ready:
            raise ClientUnavailableError(
                "synthesis client is not available",
                details={"state": self._state.value},
            )

        params = self.request_params(text)
        # The worker thread cannot be interrupted; shield it so a late
        # response is still delivered to _discard_late_response
        call = asyncio.ensure_future(asyncio.to_thread(self._client.synthesize_speech, **params))
        try:
            with timeit("synthesis") as t:
                response = await asyncio.wait_for(asyncio.shield(call), timeout=self.synthesis.timeout_s)
        except asyncio.TimeoutError:
            call.add_done_callback(_discard_late_response)
            raise SynthesisTimeoutError(
                f"synthesis exceeded {self.synthesis.timeout_s}s",
                details={"timeout_s": self.synthesis.timeout_s},
            ) from None
        except asyncio.CancelledError:
            call.add_done_callback(_discard_late_response)
            raise
        except Exception as e:
            raise classify_exception(e) from e

        verbose(
            _LOG,
            "synthesis_response",
            chars=len(text),
            content_type=response.get("ContentType"),
            seconds=round(t.timing.seconds, 4),
        )
        return response["AudioStream"]
