from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Sequence

from appkit.crypto_utils import generate_secret, sign_control

from .config import DEFAULT_USER, SERVICE_NAME
from .hooks import WEB_SERVICE_PARAMS, FilterPipeline
from .session import SessionStore

logger = logging.getLogger(__name__)


class AuthAction(str, enum.Enum):
    GET_PUBLIC_KEY = "get_public_key"
    CONNECT_USER = "connect_user"


# Fields a filter on "web-service-params" may not change.
RESERVED_PARAMS = ("auth_action", "user", "timestamp", "control", "control_key")

_REDACTED = ("control", "control_key", "encrypted")


@dataclass
class HandshakeRequest:
    """
    One signed handshake query. Lives for a single round trip.

    control_key is only set in ephemeral mode, where it is both the signing key
    and a query param. In session mode the signing key never leaves the client.
    """
    auth_action: AuthAction
    user: str
    timestamp: int
    control: str
    control_key: Optional[str] = None
    extra: dict[str, str] = field(default_factory=dict)
    custom: dict[str, str] = field(default_factory=dict)

    def to_params(self) -> dict[str, str]:
        params: dict[str, str] = dict(self.custom)
        params.update({
            "auth_action": self.auth_action.value,
            "user": self.user,
            "timestamp": str(self.timestamp),
        })
        if self.control_key is not None:
            params["control_key"] = self.control_key
        params.update(self.extra)
        params["control"] = self.control
        return params


def redact_params(params: Mapping[str, Any]) -> dict[str, Any]:
    return {k: ("***" if k in _REDACTED else v) for k, v in params.items()}


class RequestSigner:
    def __init__(
        self,
        session: SessionStore,
        *,
        default_user: str = DEFAULT_USER,
        hooks: Optional[FilterPipeline] = None,
        secret_generator: Callable[[], str] = generate_secret,
        clock: Callable[[], float] = time.time,
    ):
        self.session = session
        self.default_user = default_user
        self.hooks = hooks or FilterPipeline()
        self._generate = secret_generator
        self._clock = clock

    def build_params(
        self,
        action: AuthAction,
        user: Optional[str] = None,
        *,
        use_session_secret: bool = False,
        extra_fields: Sequence[str] = (),
        extra_data: Optional[Mapping[str, Any]] = None,
    ) -> HandshakeRequest:
        """
        Build and sign a handshake query.

        The control code covers, in this order: auth_action, user, timestamp,
        then the values of `extra_fields` taken from `extra_data`. The server
        rebuilds the same string, so the order matters.
        """
        action = AuthAction(action)
        user = self.default_user if user is None else user
        timestamp = int(self._clock())

        control_key: Optional[str] = None
        if use_session_secret:
            signing_key = self.session.get_secret()
            if not signing_key:
                raise ValueError("session-secret signing requested but no session secret is set")
        else:
            control_key = self._generate()
            signing_key = control_key

        data = dict(extra_data or {})
        extra: dict[str, str] = {}
        for name in extra_fields:
            if name not in data or data[name] is None:
                raise ValueError(f"missing value for signed field '{name}'")
            if name in RESERVED_PARAMS:
                raise ValueError(f"'{name}' is a reserved handshake field")
            extra[name] = str(data[name])

        base = {
            "auth_action": action.value,
            "user": user,
            "timestamp": str(timestamp),
            **extra,
        }
        filtered = self.hooks.apply(WEB_SERVICE_PARAMS, dict(base), SERVICE_NAME)
        custom = {
            str(k): str(v)
            for k, v in filtered.items()
            if k not in RESERVED_PARAMS and k not in extra and v is not None
        }

        to_control = [action.value, user, str(timestamp), *extra.values()]
        control = sign_control("".join(to_control), signing_key)
        logger.debug(
            "Signed %s for %s (%s key)",
            action.value, user, "session" if use_session_secret else "ephemeral",
        )

        return HandshakeRequest(
            auth_action=action,
            user=user,
            timestamp=timestamp,
            control=control,
            control_key=control_key,
            extra=extra,
            custom=custom,
        )
