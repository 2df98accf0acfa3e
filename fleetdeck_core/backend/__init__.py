from fleetdeck_core.backend.client import DEFAULT_TIMEOUT_S, BackendClient

__all__ = ["BackendClient", "DEFAULT_TIMEOUT_S"]
