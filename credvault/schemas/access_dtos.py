from typing import List

from pydantic import ConfigDict
from pydantic.alias_generators import to_camel

from credvault.models.credential import AccessEntry, CamelModel, Capability, CredentialRecord


class GrantRequest(CamelModel):
    wallet_key: str
    capability: Capability = Capability.VIEW

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={"example": {"walletKey": "0x" + "c" * 40, "capability": "view"}},
    )


class RevokeRequest(CamelModel):
    wallet_key: str


class TransferRequest(CamelModel):
    new_owner_key: str


class AccessResponse(CamelModel):
    fingerprint: str
    owner_key: str
    issuer_key: str
    authorized_viewers: List[AccessEntry]

    @classmethod
    def from_record(cls, record: CredentialRecord) -> "AccessResponse":
        return cls(
            fingerprint=record.fingerprint,
            owner_key=record.access.owner_key,
            issuer_key=record.access.issuer_key,
            authorized_viewers=record.access.active_viewers(),
        )
