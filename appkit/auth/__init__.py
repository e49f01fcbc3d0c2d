from .client import (
    HandshakeClient,
    HandshakeResult,
    HandshakeState,
    )
from .config import AuthConfig, SettingsResolver, DEFAULT_USER
from .errors import (
    AJAX_FAILED,
    NO_RESULT,
    RESULT_ERROR,
    WRONG_DATA,
    WRONG_HMAC,
    NO_PUBLIC_KEY,
    ENCRYPT_FAILED,
    ErrorEvent,
    ErrorReporter,
    LoggingErrorReporter,
    CollectingErrorReporter,
    HandshakeError,
    TransportError,
    )
from .hooks import FilterPipeline, WEB_SERVICE_PARAMS, REQUEST_ARGS
from .session import (
    SessionState,
    SessionStore,
    InMemoryKeyValueStore,
    JsonFileKeyValueStore,
    )
from .signer import AuthAction, HandshakeRequest, RequestSigner
from .transport import HttpTransport, Transport
