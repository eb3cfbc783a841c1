"""
Request correlation for asynchronous device responses.

A RequestCorrelator is created once per application session. It hands out
request ids for outstanding device requests and remembers which continuation
must run when the device answers. It also holds the key handle to session id
bindings of each ceremony in flight, so session tokens never travel to the
device. Bindings live in a scope opened per ceremony; overlapping ceremonies
that share key handles each see only their own sessions.
"""

import itertools
import logging

from .errors import StaleResponse, UnboundKeyError

logger = logging.getLogger(__name__)


class RequestCorrelator:
    """Owns the pending-request table and the per-ceremony session tables."""

    def __init__(self):
        self._ids = itertools.count(1)
        self._pending = {}
        self._scopes = itertools.count(1)
        self._sessions = {}

    def issue(self, continuation):
        """Store ``continuation`` under a fresh request id and return the id."""
        request_id = next(self._ids)
        self._pending[request_id] = continuation
        return request_id

    def _take(self, request_id):
        try:
            return self._pending.pop(request_id)
        except (KeyError, TypeError):
            raise StaleResponse(request_id) from None

    def resolve(self, request_id, response):
        """Run the continuation for ``request_id`` with ``response``.

        The continuation is removed before it runs, so a duplicate or late
        delivery for the same id is logged and otherwise ignored. Returns True
        when a continuation was invoked.
        """
        try:
            continuation = self._take(request_id)
        except StaleResponse as e:
            logger.warning("Ignoring device response: %s", e)
            return False
        logger.debug("Resolving request %s", request_id)
        continuation(response)
        return True

    def is_pending(self, request_id):
        return request_id in self._pending

    @property
    def pending_count(self):
        return len(self._pending)

    def open_sessions(self):
        """Start a binding table for one ceremony and return its scope token."""
        scope = next(self._scopes)
        self._sessions[scope] = {}
        return scope

    @property
    def open_scopes(self):
        return len(self._sessions)

    def bind_session(self, scope, key_id, session_id):
        self._sessions[scope][key_id] = session_id

    def take_session(self, scope, key_id):
        """Consume and return the session id bound to ``key_id`` in ``scope``."""
        try:
            return self._sessions[scope].pop(key_id)
        except (KeyError, TypeError):
            raise UnboundKeyError(key_id) from None

    def clear_sessions(self, scope):
        """Drop the bindings of one ceremony; other scopes are untouched."""
        self._sessions.pop(scope, None)
