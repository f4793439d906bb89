from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from app.errors import ApiError

BROKER_SIGNATURE_ISSUER = "Upstash"
SENSITIVE_KEYS = frozenset(
    {"authorization", "token", "secret", "password", "api_key", "apikey", "access_token", "upstash-signature"}
)


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = str(env.get(name, "")).strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def _split_csv(raw: str) -> list[str]:
    return [x.strip() for x in raw.split(",") if x.strip()]


def _b64url_decode(raw: str) -> bytes:
    padded = raw + "=" * ((4 - len(raw) % 4) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def redact_sensitive(value: object) -> object:
    if isinstance(value, dict):
        redacted: dict[str, object] = {}
        for key, item in value.items():
            if str(key).lower() in SENSITIVE_KEYS:
                redacted[str(key)] = "***REDACTED***"
            else:
                redacted[str(key)] = redact_sensitive(item)
        return redacted
    if isinstance(value, list):
        return [redact_sensitive(x) for x in value]
    if isinstance(value, str):
        if len(value) >= 24 and any(k in value.lower() for k in ("sk-", "bearer ", "token")):
            return "***REDACTED***"
    return value


def _unauthorized(message: str) -> ApiError:
    return ApiError(
        code="AUTH_UNAUTHORIZED",
        message=message,
        error_class="security_sensitive",
        retryable=False,
        http_status=401,
    )


@dataclass
class AuthContext:
    tenant_id: str
    subject: str
    email: str | None
    roles: frozenset[str]
    claims: dict[str, Any]


@dataclass
class JwtSecurityConfig:
    enabled: bool
    issuer: str
    audience: str
    shared_secret: str
    required_claims: list[str]
    tenant_claim: str
    role_claim: str
    admin_roles: frozenset[str]
    log_redaction_enabled: bool
    trace_id_strict_required: bool

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "JwtSecurityConfig":
        env = os.environ if environ is None else environ
        issuer = str(env.get("JWT_ISSUER", "")).strip()
        audience = str(env.get("JWT_AUDIENCE", "")).strip()
        shared_secret = str(env.get("JWT_SHARED_SECRET", "")).strip()
        return cls(
            enabled=bool(issuer or audience or shared_secret),
            issuer=issuer,
            audience=audience,
            shared_secret=shared_secret,
            required_claims=_split_csv(str(env.get("JWT_REQUIRED_CLAIMS", "tenant_id,sub,exp"))),
            tenant_claim=str(env.get("JWT_TENANT_CLAIM", "tenant_id")).strip() or "tenant_id",
            role_claim=str(env.get("JWT_ROLE_CLAIM", "role")).strip() or "role",
            admin_roles=frozenset(_split_csv(str(env.get("JWT_ADMIN_ROLES", "admin,owner")))),
            log_redaction_enabled=_env_bool(env, "SECURITY_LOG_REDACTION_ENABLED", True),
            trace_id_strict_required=_env_bool(env, "TRACE_ID_STRICT_REQUIRED", False),
        )


def _split_token(token: str, *, error: Any) -> tuple[dict[str, Any], dict[str, Any], str, str]:
    parts = token.split(".")
    if len(parts) != 3:
        raise error("invalid token format")
    header_raw, payload_raw, signature_raw = parts
    try:
        header_obj = json.loads(_b64url_decode(header_raw))
        payload_obj = json.loads(_b64url_decode(payload_raw))
    except (json.JSONDecodeError, ValueError, TypeError):
        raise error("invalid token payload") from None
    if not isinstance(header_obj, dict) or not isinstance(payload_obj, dict):
        raise error("invalid token payload")
    return header_obj, payload_obj, f"{header_raw}.{payload_raw}", signature_raw


def _hs256(secret: str, signing_input: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), signing_input.encode("ascii"), hashlib.sha256).digest()
    return _b64url_encode(digest)


def _check_time_claims(payload_obj: dict[str, Any], *, error: Any, require_exp: bool) -> None:
    now_ts = int(datetime.now(UTC).timestamp())
    exp = _as_int(payload_obj.get("exp"))
    if (exp is None and require_exp) or (exp is not None and exp <= now_ts):
        raise error("token expired")
    nbf = _as_int(payload_obj.get("nbf"))
    if nbf is not None and nbf > now_ts:
        raise error("token not yet valid")


def _roles_from_claim(raw: Any) -> frozenset[str]:
    if isinstance(raw, str):
        return frozenset(_split_csv(raw))
    if isinstance(raw, list):
        return frozenset(str(x).strip() for x in raw if str(x).strip())
    return frozenset()


def parse_and_validate_bearer_token(*, authorization: str | None, cfg: JwtSecurityConfig) -> AuthContext:
    if not authorization:
        raise _unauthorized("missing Authorization bearer token")
    prefix = "Bearer "
    if not authorization.startswith(prefix):
        raise _unauthorized("invalid Authorization header")
    token = authorization[len(prefix) :].strip()
    if not token:
        raise _unauthorized("empty bearer token")
    header_obj, payload_obj, signing_input, signature_raw = _split_token(token, error=_unauthorized)
    if str(header_obj.get("alg", "")).upper() != "HS256":
        raise _unauthorized("unsupported jwt algorithm")
    if not cfg.shared_secret:
        raise _unauthorized("jwt shared secret not configured")
    if not hmac.compare_digest(_hs256(cfg.shared_secret, signing_input), signature_raw):
        raise _unauthorized("invalid token signature")
    _check_time_claims(payload_obj, error=_unauthorized, require_exp=True)

    if cfg.issuer and str(payload_obj.get("iss", "")) != cfg.issuer:
        raise _unauthorized("jwt issuer mismatch")
    if cfg.audience:
        aud = payload_obj.get("aud")
        if isinstance(aud, list):
            aud_ok = cfg.audience in {str(x) for x in aud}
        else:
            aud_ok = str(aud or "") == cfg.audience
        if not aud_ok:
            raise _unauthorized("jwt audience mismatch")
    for claim in cfg.required_claims:
        if claim not in payload_obj:
            raise _unauthorized(f"missing required claim: {claim}")

    tenant_id = str(payload_obj.get(cfg.tenant_claim) or "").strip()
    subject = str(payload_obj.get("sub") or "").strip()
    if not tenant_id or not subject:
        raise _unauthorized("missing tenant or subject claim")
    email = str(payload_obj.get("email") or "").strip() or None
    return AuthContext(
        tenant_id=tenant_id,
        subject=subject,
        email=email,
        roles=_roles_from_claim(payload_obj.get(cfg.role_claim)),
        claims=payload_obj,
    )


def require_admin_role(ctx: AuthContext, cfg: JwtSecurityConfig) -> None:
    if not ctx.roles & cfg.admin_roles:
        raise ApiError(
            code="AUTH_FORBIDDEN",
            message="admin role required",
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )


@dataclass(frozen=True)
class BrokerSignatureConfig:
    current_key: str
    next_key: str
    allow_unsigned: bool

    @property
    def keys(self) -> list[str]:
        return [k for k in dict.fromkeys((self.current_key, self.next_key)) if k]

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "BrokerSignatureConfig":
        env = os.environ if environ is None else environ
        current = str(env.get("ATTR_BROKER_CURRENT_SIGNING_KEY", "")).strip()
        return cls(
            current_key=current,
            next_key=str(env.get("ATTR_BROKER_NEXT_SIGNING_KEY", "")).strip() or current,
            allow_unsigned=_env_bool(env, "ATTR_ALLOW_UNSIGNED_WORKER", False),
        )


def _signature_invalid(message: str) -> ApiError:
    return ApiError(
        code="BROKER_SIGNATURE_INVALID",
        message=message,
        error_class="security_sensitive",
        retryable=False,
        http_status=403,
    )


def sign_broker_body(*, body: bytes, key: str, ttl_s: int = 300, subject: str = "") -> str:
    """Build an ``Upstash-Signature`` value the way the broker signs a delivery."""
    now_ts = int(datetime.now(UTC).timestamp())
    header = _b64url_encode(json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode("utf-8"))
    claims = {
        "iss": BROKER_SIGNATURE_ISSUER,
        "sub": subject,
        "nbf": now_ts,
        "exp": now_ts + ttl_s,
        "body": _b64url_encode(hashlib.sha256(body).digest()),
    }
    payload = _b64url_encode(json.dumps(claims, separators=(",", ":")).encode("utf-8"))
    signing_input = f"{header}.{payload}"
    return f"{signing_input}.{_hs256(key, signing_input)}"


def verify_broker_signature(*, signature: str | None, body: bytes, cfg: BrokerSignatureConfig) -> None:
    if not cfg.keys:
        if cfg.allow_unsigned:
            return
        raise ApiError(
            code="BROKER_SIGNING_NOT_CONFIGURED",
            message="broker signing keys are not configured",
            error_class="transient",
            retryable=True,
            http_status=503,
        )
    if not signature:
        raise ApiError(
            code="BROKER_SIGNATURE_MISSING",
            message="Upstash-Signature header is missing",
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )
    header_obj, payload_obj, signing_input, signature_raw = _split_token(signature.strip(), error=_signature_invalid)
    if str(header_obj.get("alg", "")).upper() != "HS256":
        raise _signature_invalid("unsupported signature algorithm")
    if not any(hmac.compare_digest(_hs256(key, signing_input), signature_raw) for key in cfg.keys):
        raise _signature_invalid("signature does not match any signing key")
    _check_time_claims(payload_obj, error=_signature_invalid, require_exp=False)
    if str(payload_obj.get("iss", "")) != BROKER_SIGNATURE_ISSUER:
        raise _signature_invalid("signature issuer mismatch")
    expected_body = _b64url_encode(hashlib.sha256(body).digest())
    claimed_body = str(payload_obj.get("body") or "").rstrip("=")
    if not hmac.compare_digest(expected_body, claimed_body):
        raise _signature_invalid("signature body hash mismatch")
