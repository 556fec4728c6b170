from datetime import datetime

from credvault.models.credential import CamelModel, Role


class ChallengeRequest(CamelModel):
    wallet_key: str


class ChallengeResponse(CamelModel):
    wallet_key: str
    nonce: str
    message: str
    expires_at: datetime


class SignatureRequest(CamelModel):
    wallet_key: str
    signature: str


class TokenResponse(CamelModel):
    token: str
    token_type: str = "Bearer"
    wallet_key: str
    role: Role
    expires_at: datetime


class MeResponse(CamelModel):
    wallet_key: str
    role: Role
    expires_at: datetime
