"""
Tea Machine — Errors
Transport and decode failures. Domain refusals are not exceptions.
"""


class TeaMachineError(Exception):
    """Base class for every error raised by the controller."""


# ── Connection ────────────────────────────────────────────────────────────────

class ConnectError(TeaMachineError):
    """Opening a session failed. The session stays closed."""


class BluetoothUnavailableError(ConnectError):
    """The host has no usable Bluetooth adapter."""


class PairingRejectedError(ConnectError):
    """Pairing was declined or no matching device answered."""


class ServiceMissingError(ConnectError):
    """The device lacks the tea machine service or one of its characteristics."""


# ── Commands ──────────────────────────────────────────────────────────────────

class SendError(TeaMachineError):
    pass


class NotConnectedError(SendError):
    pass


class TransportFailureError(SendError):
    pass


# ── Snapshots ─────────────────────────────────────────────────────────────────

class SnapshotDecodeError(TeaMachineError, ValueError):
    """A state notification could not be parsed."""
