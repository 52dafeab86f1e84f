from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Iterable, Protocol

from ..formats import DocFormat


class StagedRole(str, Enum):
    INPUT = "input"
    OUTPUT = "output"


@dataclass(frozen=True)
class StagedFile:
    request_id: str
    role: StagedRole
    path: Path


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class UserConfig:
    user_id: str
    target_format: DocFormat
    source_format: DocFormat | None = None
    updated_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, object]:
        return {
            "user_id": self.user_id,
            "target_format": self.target_format.value,
            "source_format": self.source_format.value if self.source_format else None,
            "updated_at": self.updated_at.isoformat().replace("+00:00", "Z"),
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "UserConfig":
        source = data.get("source_format")
        return cls(
            user_id=str(data["user_id"]),
            target_format=DocFormat(str(data["target_format"])),
            source_format=DocFormat(str(source)) if source else None,
            updated_at=datetime.fromisoformat(str(data["updated_at"]).replace("Z", "+00:00")),
        )


class StateGateway(Protocol):
    async def get(self, user_id: str) -> UserConfig:
        """Return the user's config, or a default one. Never raises."""

    async def put(self, config: UserConfig) -> None:
        """Durably replace the user's record. Raises StorageError."""

    async def update(self, user_id: str, **changes: object) -> tuple[UserConfig, bool]:
        """Atomically change some fields of the user's record.

        Returns the resulting config and whether it was written. Raises
        StorageError.
        """


class StagingGateway(Protocol):
    async def allocate(self, request_id: str, role: StagedRole, extension: str = "") -> StagedFile:
        ...

    async def write(self, handle: StagedFile, data: bytes) -> None:
        ...

    async def read(self, handle: StagedFile) -> bytes:
        ...

    async def release(self, handle: StagedFile) -> None:
        ...

    def files_for(self, request_id: str) -> list[Path]:
        ...

    async def reconcile(self, claimed: Iterable[str] = ()) -> int:
        ...


class ConverterGateway(Protocol):
    async def convert(
        self,
        source: StagedFile,
        output: StagedFile,
        source_format: DocFormat,
        target_format: DocFormat,
        timeout: float,
    ) -> StagedFile:
        """Convert ``source`` into ``output`` and return ``output``.

        Raises a ConversionError subclass on failure. The engine process is
        guaranteed to be gone when this returns or raises.
        """


class BotGateway(Protocol):
    async def deliver_result(self, user_id: str, data: bytes, fmt: DocFormat) -> None:
        ...

    async def deliver_error(self, user_id: str, message: str) -> None:
        ...
