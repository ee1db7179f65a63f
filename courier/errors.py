class CourierError(RuntimeError):
    kind = "CourierError"

    def __init__(self, message: str = "", *, detail=None):
        super().__init__(message or self.kind)
        self.detail = detail


class NetworkUnreachable(CourierError):
    kind = "NetworkUnreachable"


class Blocked(CourierError):
    kind = "Blocked"


class EngineFailure(CourierError):
    kind = "EngineFailure"


class CredentialRejected(CourierError):
    kind = "CredentialRejected"


class OTPInvalid(CourierError):
    kind = "OTPInvalid"


class OTPTimeout(CourierError):
    kind = "OTPTimeout"


class UploadTargetMissing(CourierError):
    kind = "UploadTargetMissing"


class ConfigurationError(CourierError):
    kind = "ConfigurationError"


class InvalidTransition(CourierError):
    kind = "InvalidTransition"
