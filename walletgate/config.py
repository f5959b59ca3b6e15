from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import urlparse, urlunparse

from pydantic import field_validator
from pydantic_settings import BaseSettings

BASE_DIR = Path(__file__).resolve().parent


class Settings(BaseSettings):
    ORIGIN: str = "http://127.0.0.1:8081"
    APP_NAME: str = "WalletGate"

    # lifetime of a real-time session (and its challenge)
    SESSION_TTL_SECONDS: int = 900
    # entropy of the per-session challenge (bytes before base64url)
    CHALLENGE_BYTES: int = 32

    # access tokens
    TOKEN_TTL_SECONDS: int = 3600
    # raw 32-byte Ed25519 seed, base64. Empty -> ephemeral key per process.
    SERVER_ED25519_SK_B64: str = ""

    # role -> permissions, e.g. ROLE_PERMISSIONS='{"admin": ["user_read", "user_write"]}'
    ROLE_PERMISSIONS: Dict[str, List[str]] = {}

    # optional JSON file of identities loaded at startup
    KNOWN_IDENTITIES_PATH: Optional[Path] = None

    AUDIT_ENABLED: bool = True
    AUDIT_DIR: Path = BASE_DIR.parent / "audit"

    class Config:
        env_file = ".env"

    @field_validator("ORIGIN")
    @classmethod
    def normalize_origin(cls, v: str) -> str:
        """
        ORIGIN is the public http(s) origin of this service. It ends up in the
        QR login URI, so it must be absolute.

        Normalization:
          - strip whitespace and trailing slash
          - require http/https and a hostname
          - lowercase hostname, keep port
        """
        v = (v or "").strip().rstrip("/")
        p = urlparse(v)

        if p.scheme not in ("http", "https"):
            raise ValueError("ORIGIN must start with http:// or https://")

        if not p.hostname:
            raise ValueError("ORIGIN must include a hostname")

        netloc = p.hostname.lower()
        if p.port:
            netloc = f"{netloc}:{p.port}"

        return urlunparse((p.scheme, netloc, "", "", "", ""))

    @field_validator("APP_NAME")
    @classmethod
    def normalize_app_name(cls, v: str) -> str:
        return (v or "").strip() or "WalletGate"

    @field_validator("SESSION_TTL_SECONDS", "TOKEN_TTL_SECONDS")
    @classmethod
    def positive_ttl(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("TTL must be > 0 seconds")
        return v

    @field_validator("CHALLENGE_BYTES")
    @classmethod
    def challenge_entropy(cls, v: int) -> int:
        # below 16 bytes the challenge becomes guessable
        if v < 16:
            raise ValueError("CHALLENGE_BYTES must be >= 16")
        return v

    @field_validator("ROLE_PERMISSIONS", mode="before")
    @classmethod
    def normalize_role_permissions(cls, v):
        """Accepts a list or a comma-separated string per role."""
        if not isinstance(v, dict):
            return v
        out: Dict[str, List[str]] = {}
        for role, perms in v.items():
            role = str(role).strip().lower()
            if not role:
                continue
            if isinstance(perms, str):
                perms = perms.split(",")
            if not isinstance(perms, (list, tuple, set)):
                out[role] = perms
                continue
            out[role] = sorted({str(p).strip() for p in perms if str(p).strip()})
        return out


settings = Settings()
