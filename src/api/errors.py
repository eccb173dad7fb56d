from __future__ import annotations


class MelError(Exception):
    """Base error for the MEL evaluation engine."""


class RuleStoreUnavailableError(MelError):
    """Rule/alert persistence cannot be reached. Fatal for the triggering request."""


class UpstreamUnavailableError(MelError):
    """The equipment snapshot could not be fetched from the upstream provider."""


class MalformedGroupDefinitionError(MelError):
    """A stored group definition payload could not be parsed."""

    def __init__(self, payload: object, reason: str):
        self.payload = payload
        self.reason = reason
        super().__init__(f"malformed group definition ({reason}): {payload!r}")
