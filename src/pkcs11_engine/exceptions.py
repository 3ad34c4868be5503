class Pkcs11EngineError(RuntimeError):
    """Base engine error."""


class EngineConfigurationError(Pkcs11EngineError):
    """Configuration or resource identifier is invalid or incomplete."""


class EngineOperationError(Pkcs11EngineError):
    """A token operation failed."""


class MalformedUriError(EngineConfigurationError):
    """The pkcs11: identifier could not be parsed."""


class MissingSelectorError(EngineConfigurationError):
    """Neither an object id nor a label was given where one is required."""


class MissingModulePathError(EngineConfigurationError):
    """No PKCS#11 module path in the URI, the engine config or the environment."""


class SecretUnavailableError(EngineOperationError):
    """No PIN could be obtained (unreadable pin-source, cancelled prompt)."""


class ModuleInitializationError(EngineOperationError):
    """The PKCS#11 module could not be loaded or initialized."""


class NoMatchingSlotError(EngineOperationError):
    """No slot carries a token matching the selection criteria."""


class SessionOpenError(EngineOperationError):
    """A session could not be opened on the selected slot."""


class AuthenticationError(EngineOperationError):
    """Login to the token was rejected."""


class NoSuchKeyError(EngineOperationError):
    """No object on the token matched the selection criteria."""


class NoSuitableCertificateError(EngineOperationError):
    """No certificate on the token is acceptable for client authentication."""


class SearchError(EngineOperationError):
    """The token failed while enumerating objects."""


def format_exception(exc: BaseException) -> str:
    details = str(exc).strip()
    if not details and getattr(exc, "args", None):
        details = ", ".join(str(a) for a in exc.args if a)
    if details:
        return f"{type(exc).__name__}: {details}"
    return type(exc).__name__
