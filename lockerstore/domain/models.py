"""
Pydantic models for the documents the identity backend stores.

The store itself treats ``body`` columns as opaque JSON. These models give
the backend facade a typed view of the documents it reads and writes. The
JSON field names follow the wire format used by the platform, so documents
written by other nodes round-trip unchanged (unknown keys are preserved).
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class AccountState(str, Enum):
    """Account lifecycle states."""

    ACTIVE = "active"
    SUSPENDED = "suspended"
    DELETED = "deleted"
    RECOVERY = "recovery"


class _Document(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    def to_body(self) -> dict[str, Any]:
        """JSON-compatible dict as stored in a ``body`` column."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_body(cls, body: Any):
        return cls.model_validate(body)


# ============================================================================
# Accounts
# ============================================================================


class Account(_Document):
    """Account profile; ``id`` is the account DID."""

    id: str
    type: str = "Account"
    version: int | None = None
    email: str = ""
    encrypted_password: str | None = Field(default=None, alias="encryptedPassword")
    master_account: str | None = Field(default=None, alias="master")
    parent_account: str | None = Field(default=None, alias="parent")
    state: str = AccountState.ACTIVE.value
    registered_at: datetime | None = Field(default=None, alias="registeredAt")
    name: str = ""
    given_name: str | None = Field(default=None, alias="givenName")
    family_name: str | None = Field(default=None, alias="familyName")
    access_level: int = Field(default=0, alias="level")


class AccessKey(_Document):
    """API-style credential; ``id`` is the key DID, ``account_id`` the owner DID."""

    id: str
    account_id: str = Field(alias="account")
    access_level: int = Field(default=0, alias="level")
    type: str = ""
    secret: str | None = None
    management_key: str = Field(default="", alias="mgmtKey")
    encrypted_managed_key: str | None = Field(default=None, alias="emk")
    encrypted_hosted_key: str | None = Field(default=None, alias="ehk")


# ============================================================================
# Encrypted envelopes and recovery codes
# ============================================================================


class DataEnvelope(BaseModel):
    """Encrypted identity, locker or property record."""

    model_config = ConfigDict(populate_by_name=True)

    hash: str
    access_level: int = Field(default=0, alias="lvl")
    encrypted_id: str = Field(default="", alias="id")
    encrypted_body: str = Field(default="", alias="data")


class RecoveryCode(BaseModel):
    """Single-use recovery token issued to ``user_id`` (account DID)."""

    model_config = ConfigDict(populate_by_name=True)

    code: str
    user_id: str = Field(alias="userID")
    expires_at: datetime | None = Field(default=None, alias="expiresAt")


# ============================================================================
# DID documents
# ============================================================================


class Proof(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: str
    creator: str
    value: str = Field(alias="proofValue")


class DIDDocument(_Document):
    """Resolvable DID document."""

    context: Any = Field(default=None, alias="@context")
    id: str
    public_key: list[Any] | None = Field(default=None, alias="publicKey")
    authentication: list[Any] | None = None
    service: list[Any] | None = None
    created: datetime | None = None
    updated: datetime | None = None
    proof: Proof | None = None

    def equals(self, other: "DIDDocument | None") -> bool:
        """Two documents are the same when their ids and proof values match."""
        return (
            other is not None
            and other.id == self.id
            and other.proof is not None
            and self.proof is not None
            and other.proof.value == self.proof.value
        )
