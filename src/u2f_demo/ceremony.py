"""
Enrollment and authentication ceremonies.

A ceremony runs from the relying party's challenge to a terminal Outcome:

    enrollment:      IDLE -> CHALLENGE_REQUESTED -> DEVICE_REGISTERING -> FINALIZING -> DONE
    authentication:  IDLE -> CHALLENGE_REQUESTED -> DEVICE_SIGNING -> FINALIZING -> DONE

Failures at any step end the ceremony with a Failure; nothing is retried.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional

from .errors import CeremonyError, DeviceError, ProtocolError, Success, is_device_error

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30
TOUCH_PROMPT = "please touch the token"


class CeremonyKind(Enum):
    ENROLLMENT = "enrollment"
    AUTHENTICATION = "authentication"


class CeremonyState(Enum):
    IDLE = "idle"
    CHALLENGE_REQUESTED = "challenge_requested"
    DEVICE_REGISTERING = "device_registering"
    DEVICE_SIGNING = "device_signing"
    FINALIZING = "finalizing"
    DONE = "done"


@dataclass
class Ceremony:
    kind: CeremonyKind
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    session_id: Optional[str] = None
    app_id: Optional[str] = None
    challenge: Any = None
    registered_keys: List[dict] = field(default_factory=list)
    request_id: Optional[int] = None
    state: CeremonyState = CeremonyState.IDLE
    history: List[CeremonyState] = field(default_factory=lambda: [CeremonyState.IDLE])
    outcome: Any = None

    @property
    def enrolling(self):
        return self.kind == CeremonyKind.ENROLLMENT

    def advance(self, state):
        logger.debug("%s ceremony: %s -> %s", self.kind.value, self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def finish(self, outcome):
        self.outcome = outcome
        self.advance(CeremonyState.DONE)
        return outcome


class CeremonyListener:
    """Receives the user-visible events of a ceremony.

    Subclass this to render them; the defaults do nothing.
    """

    def show_message(self, message):
        pass

    def hide_message(self):
        pass

    def show_error(self, failure):
        pass

    def add_token(self, token):
        pass

    def highlight_token(self, token):
        pass


def _require(payload, fields, what):
    if not isinstance(payload, dict):
        raise ProtocolError(f"{what} is not an object")
    missing = [name for name in fields if name not in payload]
    if missing:
        raise ProtocolError(f"{what} is missing {', '.join(missing)}")


class CeremonyOrchestrator:
    """Drives ceremonies between a relying party and a device gateway."""

    def __init__(self, relying_party, gateway, listener=None, timeout_seconds=DEFAULT_TIMEOUT_SECONDS):
        self.relying_party = relying_party
        self.gateway = gateway
        self.correlator = gateway.correlator
        self.listener = listener or CeremonyListener()
        self.timeout_seconds = timeout_seconds
        self.last_ceremony = None

    async def _await_device(self, ceremony, capability, *args):
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        def on_complete(response):
            if not future.done():
                future.set_result(response)

        ceremony.request_id = capability(*args, ceremony.timeout_seconds, on_complete)
        # No local timer: if the device never answers, the request stays pending.
        return await future

    def _fail(self, ceremony, error):
        failure = error.to_failure(ceremony.enrolling)
        logger.error("%s ceremony failed: %s", ceremony.kind.value, failure.message)
        self.listener.hide_message()
        self.listener.show_error(failure)
        return ceremony.finish(failure)

    async def enroll(self, reregistration=False):
        """Register a new token (or re-register one) and return the Outcome."""
        ceremony = self.last_ceremony = Ceremony(CeremonyKind.ENROLLMENT, self.timeout_seconds)
        try:
            ceremony.advance(CeremonyState.CHALLENGE_REQUESTED)
            begin = await self.relying_party.begin_enroll(reregistration)
            _require(begin, ("appId", "registerRequests", "sessionId"), "enroll challenge")
            ceremony.app_id = begin["appId"]
            ceremony.session_id = begin["sessionId"]
            ceremony.registered_keys = list(begin.get("registeredKeys") or [])
            register_requests = begin["registerRequests"]
            if isinstance(register_requests, dict):
                register_requests = [register_requests]
            ceremony.challenge = register_requests

            self.listener.show_message(TOUCH_PROMPT)
            ceremony.advance(CeremonyState.DEVICE_REGISTERING)
            response = await self._await_device(
                ceremony,
                self.gateway.register,
                ceremony.app_id,
                register_requests,
                ceremony.registered_keys,
            )
            self.listener.hide_message()
            _require(response, (), "register response")
            if is_device_error(response.get("errorCode")):
                raise DeviceError(response["errorCode"])
            _require(response, ("registrationData", "clientData"), "register response")

            ceremony.advance(CeremonyState.FINALIZING)
            token = await self.relying_party.finish_enroll(
                dict(response, sessionId=ceremony.session_id)
            )
        except CeremonyError as e:
            return self._fail(ceremony, e)

        self.listener.add_token(token)
        return ceremony.finish(Success(token))

    async def authenticate(self):
        """Sign a fresh challenge with any registered token and return the Outcome."""
        ceremony = self.last_ceremony = Ceremony(CeremonyKind.AUTHENTICATION, self.timeout_seconds)
        scope = self.correlator.open_sessions()
        try:
            ceremony.advance(CeremonyState.CHALLENGE_REQUESTED)
            begin = await self.relying_party.begin_sign()
            _require(begin, ("appId", "challenge", "registeredKeys"), "sign challenge")
            ceremony.app_id = begin["appId"]
            ceremony.challenge = begin["challenge"]

            # The device only sees key handles and transports, never session ids.
            for key in begin["registeredKeys"]:
                _require(key, ("keyHandle", "sessionId"), "registered key")
                self.correlator.bind_session(scope, key["keyHandle"], key["sessionId"])
                ceremony.registered_keys.append(
                    {name: value for name, value in key.items() if name != "sessionId"}
                )

            self.listener.show_message(TOUCH_PROMPT)
            ceremony.advance(CeremonyState.DEVICE_SIGNING)
            response = await self._await_device(
                ceremony,
                self.gateway.sign,
                ceremony.app_id,
                ceremony.challenge,
                ceremony.registered_keys,
            )
            self.listener.hide_message()
            _require(response, (), "sign response")
            if is_device_error(response.get("errorCode")):
                raise DeviceError(response["errorCode"])
            _require(response, ("keyHandle", "signatureData", "clientData"), "sign response")
            ceremony.session_id = self.correlator.take_session(scope, response["keyHandle"])

            ceremony.advance(CeremonyState.FINALIZING)
            token = await self.relying_party.finish_sign(
                dict(response, sessionId=ceremony.session_id)
            )
        except CeremonyError as e:
            return self._fail(ceremony, e)
        finally:
            self.correlator.clear_sessions(scope)

        self.listener.highlight_token(token)
        return ceremony.finish(Success(token))
