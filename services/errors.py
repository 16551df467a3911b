class AnalyzerError(Exception):
    """Base class for every error raised by the analyzer pipeline."""


class ConfigurationError(AnalyzerError):
    """Unknown package or malformed task declaration. Aborts the whole run."""


class TransientGatewayError(AnalyzerError):
    """A model gateway call failed (network, rate limit, provider 5xx)."""


class BatchTimeoutError(AnalyzerError):
    """A submitted batch never reached ``completed`` within its attempts."""

    def __init__(self, message: str, batch_id: str | None = None, status: str | None = None):
        super().__init__(message)
        self.batch_id = batch_id
        self.status = status


class ParseError(AnalyzerError):
    """A gateway response could not be parsed into the expected shape."""

    def __init__(self, message: str, raw: str | None = None):
        super().__init__(message)
        self.raw = raw


class PersistenceError(AnalyzerError):
    """The photo store rejected a write."""


class ProcessNotFoundError(AnalyzerError):
    """No analyzer process with the requested id."""
