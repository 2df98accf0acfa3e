class FleetDeckError(Exception):
    """Base error for FleetDeck."""


class RecoverableError(FleetDeckError):
    """Indicates the operation can be retried safely."""


class PermanentError(FleetDeckError):
    """Indicates the operation should not be retried."""


class AuthError(FleetDeckError):
    """Authentication or authorization failure."""


class ValidationError(FleetDeckError):
    """Input validation failure."""

    code = "invalid"


class NoDistributionError(ValidationError):
    """No distribution can be inferred from the selected devices."""

    code = "no-distribution"


class MixedDistributionsError(ValidationError):
    """Selected devices run releases of more than one distribution."""

    code = "mixed-distributions"


class NoEligibleReleaseError(ValidationError):
    """The distribution has no published, non-yanked release."""

    code = "no-eligible-releases"


class EmptyCanaryError(ValidationError):
    """Canary selection matched no devices."""

    code = "empty-canary"


class InvalidTransitionError(PermanentError):
    """A deployment status change is not allowed from its current state."""


class RemoteCallError(RecoverableError):
    """The backend API rejected or failed to answer a request."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
