"""Error taxonomy shared by the registry, client and gateway."""


class WaypointError(Exception):
    """Base class for every error Waypoint raises on purpose."""

    status_code = 500

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        return {"error": str(self), "kind": self.kind}


class DuplicateInstanceError(WaypointError):
    """An UP instance already holds this instance_id at another address."""
    status_code = 409


class UnknownInstanceError(WaypointError):
    """The instance_id is not present in the registry."""
    status_code = 404


class ConfigNotFoundError(WaypointError):
    """No configuration bundle was ever published for the service."""
    status_code = 404


class RegistrationError(WaypointError):
    """A service process could not register itself. Fatal to that process."""
    status_code = 503


class RegistryUnavailableError(WaypointError):
    """The registry could not be reached over the network."""
    status_code = 503


class NoInstanceAvailableError(WaypointError):
    """The logical service name resolved to no live instance."""
    status_code = 503


class UpstreamUnavailableError(WaypointError):
    """Every forwarding attempt to the resolved instances failed."""
    status_code = 502


class DeadlineExceededError(WaypointError):
    """The inbound request's deadline expired before an upstream answered."""
    status_code = 504


class StaleRegistryWarning(UserWarning):
    """The cached instance list is older than the staleness threshold."""


# kind name -> class, used when rebuilding errors from JSON error bodies
ERRORS_BY_KIND = {
    cls.__name__: cls
    for cls in (
        DuplicateInstanceError,
        UnknownInstanceError,
        ConfigNotFoundError,
        RegistrationError,
        RegistryUnavailableError,
        NoInstanceAvailableError,
        UpstreamUnavailableError,
        DeadlineExceededError,
    )
}
