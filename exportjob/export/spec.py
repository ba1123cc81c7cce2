"""
Job specification for export jobs.

A JobSpec is created when the job is enqueued, persisted by the JobRunner as
four flat string fields, and rebuilt from that form on every attempt.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

from .errors import MissingConfigurationError


class DestinationKind(str, Enum):
    REMOTE_ENDPOINT = 'remote_endpoint'
    LOCAL_TARGET = 'local_target'


KEY_SOURCE_ID = 'source_id'
KEY_PASSPHRASE = 'passphrase'
KEY_DESTINATION_KIND = 'destination_kind'
KEY_DESTINATION_REF = 'destination_ref'


@dataclass(frozen=True)
class JobSpec:
    """
    Immutable configuration for one export job.

    Attributes:
        source_id: Opaque identifier of the data source to export
        passphrase: Secret used to encrypt the artifact (never logged)
        destination_kind: Where the artifact goes
        destination_ref: Upload URL, present iff destination_kind is REMOTE_ENDPOINT
    """

    source_id: str
    passphrase: str = field(repr=False)
    destination_kind: DestinationKind = DestinationKind.REMOTE_ENDPOINT
    destination_ref: Optional[str] = None

    def __post_init__(self):
        if not self.source_id:
            raise MissingConfigurationError("source_id is required")

        try:
            kind = DestinationKind(self.destination_kind)
        except ValueError:
            raise MissingConfigurationError(f"Invalid destination kind: {self.destination_kind}")
        object.__setattr__(self, 'destination_kind', kind)

        if kind is DestinationKind.REMOTE_ENDPOINT and not self.destination_ref:
            raise MissingConfigurationError("destination_ref is required for a remote endpoint")
        if kind is DestinationKind.LOCAL_TARGET and self.destination_ref:
            raise MissingConfigurationError("destination_ref must not be set for a local target")

    @property
    def is_remote(self) -> bool:
        return self.destination_kind is DestinationKind.REMOTE_ENDPOINT

    def to_data(self) -> Dict[str, Optional[str]]:
        """Serialize to the flat key-value form stored by the job queue."""
        return {
            KEY_SOURCE_ID: self.source_id,
            KEY_PASSPHRASE: self.passphrase,
            KEY_DESTINATION_KIND: self.destination_kind.value,
            KEY_DESTINATION_REF: self.destination_ref,
        }

    @classmethod
    def from_data(cls, data: Dict[str, Optional[str]]) -> 'JobSpec':
        """
        Rebuild a JobSpec from its persisted form.

        Raises:
            MissingConfigurationError: If a required field is missing or invalid
        """
        missing = [
            key for key in (KEY_SOURCE_ID, KEY_PASSPHRASE, KEY_DESTINATION_KIND)
            if not data.get(key)
        ]
        if missing:
            raise MissingConfigurationError(
                f"Missing critical parameters for export job: {', '.join(missing)}"
            )

        return cls(
            source_id=data[KEY_SOURCE_ID],
            passphrase=data[KEY_PASSPHRASE],
            destination_kind=data[KEY_DESTINATION_KIND],
            destination_ref=data.get(KEY_DESTINATION_REF) or None,
        )

    def describe(self) -> str:
        """Loggable summary (no passphrase)."""
        target = self.destination_ref if self.is_remote else 'local'
        return f"source={self.source_id} destination={self.destination_kind.value} ({target})"
