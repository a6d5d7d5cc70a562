"""Account and membership record models."""

from typing import Any

from pydantic import BaseModel, Field, field_validator

from ..utils import normalize_address


class LedgerModel(BaseModel):
    """Base model with common serialization settings."""

    def model_dump(self, **kwargs) -> dict[str, Any]:
        """Convert to dict with exclude_none by default."""
        kwargs.setdefault("exclude_none", True)
        return super().model_dump(**kwargs)


class MemberRecord(LedgerModel):
    """One row of the membership API, validated at load time."""

    address: str
    earnings: int = Field(ge=0)
    active: bool

    @field_validator("address", mode="before")
    @classmethod
    def _normalize_address(cls, value: Any) -> str:
        return normalize_address(value)

    @field_validator("earnings", mode="before")
    @classmethod
    def _parse_earnings(cls, value: Any) -> Any:
        # Large integers arrive as decimal strings
        if isinstance(value, str):
            try:
                return int(value.strip())
            except ValueError:
                raise ValueError(f"earnings must be an integer string, got {value!r}") from None
        return value


class Account(LedgerModel):
    """Migration state of one member.

    ``owed`` is None until the account has been resolved against both
    ledgers. ``pending_tx`` holds a broadcast transfer whose receipt has not
    been observed yet; it must be settled before anything new is sent.
    ``pending_nonce`` is the slot of a broadcast whose outcome is unknown;
    it must be looked up on chain first.
    """

    address: str
    total_earnings: int = Field(ge=0)
    withdrawn_on_old: int = Field(default=0, ge=0)
    migrated_on_new: int = Field(default=0, ge=0)
    owed: int | None = None
    sequence: int = 0
    transient_failures: int = 0
    pending_tx: str | None = None
    pending_nonce: int | None = None
    pending_amount: int | None = None
    last_error: str | None = None

    model_config = {"validate_assignment": True}

    @field_validator("address", mode="before")
    @classmethod
    def _normalize_address(cls, value: Any) -> str:
        return normalize_address(value)

    @property
    def is_resolved(self) -> bool:
        return self.owed is not None

    @classmethod
    def from_member(cls, record: MemberRecord, sequence: int = 0) -> "Account":
        """Build a fresh account from a membership record."""
        return cls(address=record.address, total_earnings=record.earnings, sequence=sequence)
