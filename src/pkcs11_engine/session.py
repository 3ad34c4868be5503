from __future__ import annotations

import logging
from typing import Any, Callable

import pkcs11

from .exceptions import (
    AuthenticationError,
    EngineOperationError,
    SessionOpenError,
    format_exception,
)
from .pin import Secret

_logger = logging.getLogger("pkcs11_engine.session")

_LOGIN_EXCEPTIONS = (
    pkcs11.exceptions.PinIncorrect,
    pkcs11.exceptions.PinInvalid,
    pkcs11.exceptions.PinLenRange,
    pkcs11.exceptions.PinExpired,
    pkcs11.exceptions.PinLocked,
    pkcs11.exceptions.UserPinNotInitialized,
)


class TokenSession:
    """
    Owned PKCS#11 session.

    Exactly one holder is responsible for closing a TokenSession. ``close()``
    is idempotent, and ``transfer()`` hands the responsibility to a new owner
    (the previous holder then must not close it).
    """

    def __init__(self, session: Any, *, slot_id: int, logged_in: bool) -> None:
        self._session: Any | None = session
        self.slot_id = slot_id
        self.logged_in = logged_in
        self._transferred = False

    def __enter__(self) -> "TokenSession":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if not self._transferred:
            self.close()

    @property
    def closed(self) -> bool:
        return self._session is None

    @property
    def raw(self) -> Any:
        if self._session is None:
            raise EngineOperationError("Session is not open.")
        return self._session

    def get_objects(self, template: dict[Any, Any]) -> Any:
        return self.raw.get_objects(template)

    def transfer(self) -> "TokenSession":
        """Release this holder's ownership; the caller now owns the session."""
        self._transferred = True
        return self

    def close(self) -> None:
        if self._session is None:
            _logger.debug("Session already closed slot_id=%s", self.slot_id)
            return
        session, self._session = self._session, None
        try:
            session.close()
        except pkcs11.PKCS11Error as exc:
            _logger.warning(
                "Closing session failed slot_id=%s: %s",
                self.slot_id,
                format_exception(exc),
            )
            return
        _logger.info("Session closed slot_id=%s", self.slot_id)


def open_session(
    slot: Any,
    secret: Secret | None,
    *,
    on_login_rejected: Callable[[], None] | None = None,
) -> TokenSession:
    """
    Open a read-only session on ``slot`` and log in when a secret is given.

    python-pkcs11 opens and logs in as a single call. When the token rejects
    the PIN the session it opened is left open and no handle to it is
    returned, so ``on_login_rejected`` is called to close it (normally
    ``TokenModule.close_all_sessions``) before AuthenticationError is raised.
    """
    slot_id = slot.slot_id
    try:
        token = slot.get_token()
        _logger.info(
            "Opening session slot_id=%s token=%s login=%s",
            slot_id,
            token.label,
            secret is not None,
        )
        if secret is None:
            session = token.open(rw=False)
        else:
            session = token.open(user_pin=secret.as_text(), rw=False)
    except _LOGIN_EXCEPTIONS as exc:
        _logger.error("Token login failed slot_id=%s: %s", slot_id, type(exc).__name__)
        if on_login_rejected is not None:
            on_login_rejected()
        raise AuthenticationError(
            f"Login to slot {slot_id} failed: {format_exception(exc)}"
        ) from exc
    except UnicodeDecodeError as exc:
        raise AuthenticationError("PIN is not valid UTF-8.") from exc
    except Exception as exc:
        _logger.exception("Failed to open session slot_id=%s", slot_id)
        raise SessionOpenError(
            f"Failed to open session on slot {slot_id}: {format_exception(exc)}"
        ) from exc
    return TokenSession(session, slot_id=slot_id, logged_in=secret is not None)
