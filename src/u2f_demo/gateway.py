"""
Device gateways: the two ways of reaching the second-factor device.

DirectGateway talks to a U2F (CTAP1) device over HID with python-fido2.
IndirectGateway serializes the request into a ``u2f://`` URL for an external
handler and waits for the answer to be delivered back out of band.

Both return immediately with the request id issued by the correlator; the
response (or an ``{"errorCode": ...}`` dict) reaches ``on_complete`` later,
through ``RequestCorrelator.resolve``.
"""

import abc
import asyncio
import json
import logging
import webbrowser
from enum import Enum
from functools import partial
from threading import Event, Timer
from urllib.parse import quote, unquote

from fido2.client import ClientError
from fido2.ctap import CtapError
from fido2.ctap1 import APDU, ApduError, Ctap1
from fido2.hid import CtapHidDevice
from fido2.utils import sha256, websafe_decode, websafe_encode

from .errors import ErrorCode

logger = logging.getLogger(__name__)

U2F_VERSION = "U2F_V2"
POLL_DELAY = 0.25
INDIRECT_URL_PREFIX = "u2f://auth?"

TYP_REGISTER = "navigator.id.finishEnrollment"
TYP_SIGN = "navigator.id.getAssertion"


class MessageType(str, Enum):
    REGISTER_REQUEST = "u2f_register_request"
    SIGN_REQUEST = "u2f_sign_request"
    REGISTER_RESPONSE = "u2f_register_response"
    SIGN_RESPONSE = "u2f_sign_response"


def error_response(code, message=None):
    response = {"errorCode": int(code)}
    if message:
        response["errorMessage"] = message
    return response


class DeviceGateway(abc.ABC):
    """Uniform register/sign capability over a device transport."""

    def __init__(self, correlator):
        self.correlator = correlator

    @abc.abstractmethod
    def register(self, app_id, register_requests, registered_keys, timeout_seconds, on_complete):
        """Start a registration; return the request id."""

    @abc.abstractmethod
    def sign(self, app_id, challenge, registered_keys, timeout_seconds, on_complete):
        """Start a signature over ``challenge``; return the request id."""


def _poll(poll_delay, event, func, *args):
    """Call ``func`` until the user touches the device or ``event`` is set."""
    while not event.is_set():
        try:
            return func(*args)
        except ApduError as e:
            if e.code == APDU.USE_NOT_SATISFIED:
                event.wait(poll_delay)
            else:
                raise ClientError.ERR.OTHER_ERROR(e)
        except CtapError as e:
            raise ClientError.ERR.OTHER_ERROR(e)
    raise ClientError.ERR.TIMEOUT()


class DirectGateway(DeviceGateway):
    """Gateway for a locally attached U2F device.

    The HID exchange blocks, so each request runs on the event loop's default
    executor and is resolved back on the loop when it finishes.
    """

    def __init__(self, correlator, device, origin, poll_delay=POLL_DELAY):
        super().__init__(correlator)
        self.device = device
        self.ctap1 = Ctap1(device)
        self.origin = origin
        self.poll_delay = poll_delay

    def register(self, app_id, register_requests, registered_keys, timeout_seconds, on_complete):
        request_id = self.correlator.issue(on_complete)
        logger.debug("Dispatching register request %s to %s", request_id, self.device)
        self._submit(
            request_id,
            partial(self._register, app_id, register_requests, registered_keys, timeout_seconds),
        )
        return request_id

    def sign(self, app_id, challenge, registered_keys, timeout_seconds, on_complete):
        request_id = self.correlator.issue(on_complete)
        logger.debug("Dispatching sign request %s to %s", request_id, self.device)
        self._submit(
            request_id,
            partial(self._sign, app_id, challenge, registered_keys, timeout_seconds),
        )
        return request_id

    def _submit(self, request_id, func):
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, func)

        def done(f):
            if f.cancelled():
                response = error_response(ErrorCode.OTHER_ERROR, "cancelled")
            elif f.exception() is not None:
                logger.error("Device request %s failed: %s", request_id, f.exception())
                response = error_response(ErrorCode.OTHER_ERROR, str(f.exception()))
            else:
                response = f.result()
            self.correlator.resolve(request_id, response)

        future.add_done_callback(done)

    def _client_data(self, typ, challenge):
        return json.dumps(
            {"typ": typ, "challenge": challenge, "origin": self.origin},
            separators=(",", ":"),
        ).encode()

    def _is_registered(self, app_param, key_handle):
        dummy_param = b"\0" * 32
        try:
            self.ctap1.authenticate(dummy_param, app_param, key_handle, True)
        except ApduError as e:
            return e.code == APDU.USE_NOT_SATISFIED
        return False

    def _with_timeout(self, timeout_seconds, func, *args):
        event = Event()
        timer = Timer(timeout_seconds, event.set)
        timer.daemon = True
        timer.start()
        try:
            return func(event, *args)
        except ClientError as e:
            logger.info("Device reported %r", e)
            return error_response(e.code, repr(e))
        finally:
            timer.cancel()

    def _register(self, app_id, register_requests, registered_keys, timeout_seconds):
        return self._with_timeout(
            timeout_seconds, self._do_register, app_id, register_requests, registered_keys
        )

    def _sign(self, app_id, challenge, registered_keys, timeout_seconds):
        return self._with_timeout(
            timeout_seconds, self._do_sign, app_id, challenge, registered_keys
        )

    def _do_register(self, event, app_id, register_requests, registered_keys):
        # A recognised key in the exclusion list still needs a touch before
        # the device is reported ineligible.
        for key in registered_keys or []:
            app_param = sha256(key.get("appId", app_id).encode())
            if self._is_registered(app_param, websafe_decode(key["keyHandle"])):
                dummy_param = b"\0" * 32
                _poll(self.poll_delay, event, self.ctap1.register, dummy_param, dummy_param)
                raise ClientError.ERR.DEVICE_INELIGIBLE()

        request = next(
            (r for r in register_requests if r.get("version", U2F_VERSION) == U2F_VERSION),
            None,
        )
        if request is None:
            raise ClientError.ERR.BAD_REQUEST("no supported register request")

        app_param = sha256(request.get("appId", app_id).encode())
        client_data = self._client_data(TYP_REGISTER, request["challenge"])
        registration = _poll(
            self.poll_delay, event, self.ctap1.register, sha256(client_data), app_param
        )
        return {
            "registrationData": websafe_encode(bytes(registration)),
            "clientData": websafe_encode(client_data),
            "version": U2F_VERSION,
        }

    def _do_sign(self, event, app_id, challenge, registered_keys):
        client_data = self._client_data(TYP_SIGN, challenge)
        client_param = sha256(client_data)
        for key in registered_keys:
            app_param = sha256(key.get("appId", app_id).encode())
            try:
                signature = _poll(
                    self.poll_delay,
                    event,
                    self.ctap1.authenticate,
                    client_param,
                    app_param,
                    websafe_decode(key["keyHandle"]),
                )
            except ClientError as e:
                if e.code == ClientError.ERR.TIMEOUT:
                    raise
                continue  # Not this device's key, try the next one
            return {
                "keyHandle": key["keyHandle"],
                "signatureData": websafe_encode(bytes(signature)),
                "clientData": websafe_encode(client_data),
            }
        raise ClientError.ERR.DEVICE_INELIGIBLE()


class IndirectGateway(DeviceGateway):
    """Gateway that hands requests to an external handler via a URL scheme.

    There is no call/return relation with the handler and no way to cancel a
    request, so the request id travels in the outbound message and must be
    echoed in the response given to ``deliver``.
    """

    def __init__(self, correlator, opener=None, url_prefix=INDIRECT_URL_PREFIX):
        super().__init__(correlator)
        self.opener = opener or webbrowser.open
        self.url_prefix = url_prefix

    def register(self, app_id, register_requests, registered_keys, timeout_seconds, on_complete):
        request_id = self.correlator.issue(on_complete)
        self._dispatch(request_id, {
            "type": MessageType.REGISTER_REQUEST.value,
            "appId": app_id,
            "signRequests": [dict(key, appId=key.get("appId", app_id)) for key in registered_keys or []],
            "registerRequests": [dict(r, appId=r.get("appId", app_id)) for r in register_requests],
            "timeoutSeconds": timeout_seconds,
            "requestId": request_id,
        })
        return request_id

    def sign(self, app_id, challenge, registered_keys, timeout_seconds, on_complete):
        request_id = self.correlator.issue(on_complete)
        self._dispatch(request_id, {
            "type": MessageType.SIGN_REQUEST.value,
            "appId": app_id,
            "challenge": challenge,
            "signRequests": [
                dict(key, appId=key.get("appId", app_id), challenge=challenge)
                for key in registered_keys
            ],
            "timeoutSeconds": timeout_seconds,
            "requestId": request_id,
        })
        return request_id

    def _dispatch(self, request_id, message):
        url = self.url_prefix + quote(json.dumps(message))
        logger.debug("Dispatching %s request %s", message["type"], request_id)
        if self.opener(url) is False:
            logger.error("No handler accepted request %s", request_id)
            self.correlator.resolve(
                request_id, error_response(ErrorCode.OTHER_ERROR, "no handler for " + self.url_prefix)
            )

    def deliver(self, message):
        """Route an out-of-band response back to its pending request.

        ``message`` is a dict, its JSON text, or a callback URL whose query is
        the URL-encoded JSON. Returns False for stale or duplicate responses;
        raises ValueError when the message is not a JSON object.
        """
        if isinstance(message, str):
            text = message.strip()
            if not text.startswith("{") and "?" in text:
                text = unquote(text.split("?", 1)[1])
            message = json.loads(text)
        if not isinstance(message, dict):
            raise ValueError(f"expected a JSON object, got {type(message).__name__}")
        request_id = message.get("requestId")
        response = message.get("responseData")
        if response is None:
            response = {k: v for k, v in message.items() if k not in ("type", "requestId")}
        return self.correlator.resolve(request_id, response)


def select_gateway(correlator, origin, device=None, opener=None, force_indirect=False):
    """Pick the gateway strategy once, based on what the platform offers."""
    if not force_indirect and device is None:
        device = next(iter(CtapHidDevice.list_devices()), None)
    if device is not None and not force_indirect:
        logger.info("Using direct gateway for %s", device)
        return DirectGateway(correlator, device, origin)
    logger.info("No local U2F device, using indirect gateway")
    return IndirectGateway(correlator, opener)
