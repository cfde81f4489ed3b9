"""Signing service — ES256 key table plus sign/verify for both token kinds.

Two key pairs live here:
- "daily_token": signs the per-customer, per-service-date meal tokens.
- "device": signs kiosk (point-of-sale) session assertions.

Key material is parsed once per process into a small table keyed by
purpose. Each purpose has one current private key (used for signing) and
one or more accepted public keys, addressed by ``kid``. Rotation means
publishing the new pair as current and moving the old public key into
``*_PREVIOUS_PUBLIC_KEYS`` until every token it signed has expired; once
removed from config, tokens signed by it no longer verify.

The algorithm is pinned to ES256 and the issuer is pinned per purpose.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

import jwt
from cryptography.hazmat.primitives import serialization
from flask import current_app

logger = logging.getLogger(__name__)

ALGORITHM = "ES256"

DAILY_TOKEN = "daily_token"
DEVICE = "device"

_CONFIG_KEYS = {
    DAILY_TOKEN: ("QR_PRIVATE_KEY", "QR_PUBLIC_KEY", "QR_KEY_ID",
                  "QR_PREVIOUS_PUBLIC_KEYS", "QR_TOKEN_ISSUER"),
    DEVICE: ("KIOSK_PRIVATE_KEY", "KIOSK_PUBLIC_KEY", "KIOSK_KEY_ID",
             "KIOSK_PREVIOUS_PUBLIC_KEYS", "KIOSK_TOKEN_ISSUER"),
}


class TokenVerificationError(Exception):
    """Raised when a presented token fails signature or claim checks.

    ``code`` is the user-facing rejection reason (EXPIRED or INVALID_TOKEN).
    """

    def __init__(self, code, message):
        super().__init__(message)
        self.code = code


class SigningKeyError(RuntimeError):
    """Raised when key material is missing or unparseable."""


def _normalize_pem(pem):
    # Env vars frequently carry PEMs with literal "\n" sequences.
    return pem.replace("\\n", "\n").strip().encode()


def _parse_previous_keys(raw):
    """Parse "kid=PEM;;kid=PEM" into {kid: PEM}."""
    keys = {}
    for entry in (raw or "").split(";;"):
        entry = entry.strip()
        if not entry:
            continue
        kid, sep, pem = entry.partition("=")
        if not sep or not kid.strip() or not pem.strip():
            raise SigningKeyError(f"Malformed previous public key entry: {entry[:20]}...")
        keys[kid.strip()] = pem
    return keys


@dataclass
class KeySet:
    kid: str
    issuer: str
    private_key: object = None
    public_keys: dict = field(default_factory=dict)


class KeyRing:
    """Process-wide table of signing keys, keyed by purpose.

    Loaded lazily from the Flask config on first use, then cached for the
    life of the process. ``reset()`` forces a reload (used after rotation).
    """

    def __init__(self):
        self._table = None

    def init_app(self, app):
        app.extensions["signing_keys"] = self

    def reset(self):
        self._table = None

    def load(self, config):
        table = {}
        for purpose, names in _CONFIG_KEYS.items():
            private_name, public_name, kid_name, previous_name, issuer_name = names
            keyset = KeySet(kid=config.get(kid_name), issuer=config.get(issuer_name))

            private_pem = config.get(private_name)
            if private_pem:
                try:
                    keyset.private_key = serialization.load_pem_private_key(
                        _normalize_pem(private_pem), password=None
                    )
                except ValueError as e:
                    raise SigningKeyError(f"{private_name} is not a valid PEM key") from e

            public_pem = config.get(public_name)
            if public_pem:
                keyset.public_keys[keyset.kid] = self._load_public(public_pem, public_name)

            for kid, pem in _parse_previous_keys(config.get(previous_name)).items():
                keyset.public_keys[kid] = self._load_public(pem, previous_name)

            table[purpose] = keyset

        self._table = table
        logger.info(
            "Signing keys loaded: "
            + ", ".join(f"{p}={sorted(k.public_keys)}" for p, k in table.items())
        )
        return table

    @staticmethod
    def _load_public(pem, name):
        try:
            return serialization.load_pem_public_key(_normalize_pem(pem))
        except ValueError as e:
            raise SigningKeyError(f"{name} is not a valid PEM public key") from e

    def get(self, purpose):
        if self._table is None:
            self.load(current_app.config)
        return self._table[purpose]


def _keyring():
    return current_app.extensions["signing_keys"]


def _sign(purpose, claims):
    keyset = _keyring().get(purpose)
    if keyset.private_key is None:
        raise SigningKeyError(f"No private key configured for {purpose}")
    payload = dict(claims)
    payload["iss"] = keyset.issuer
    return jwt.encode(payload, keyset.private_key, algorithm=ALGORITHM,
                      headers={"kid": keyset.kid})


def _verify(purpose, token, required):
    keyset = _keyring().get(purpose)

    try:
        header = jwt.get_unverified_header(token)
    except jwt.InvalidTokenError as e:
        raise TokenVerificationError("INVALID_TOKEN", f"Malformed token: {e}") from e

    # Reject anything not signed with the pinned algorithm before key lookup.
    if header.get("alg") != ALGORITHM:
        raise TokenVerificationError("INVALID_TOKEN", f"Unexpected algorithm {header.get('alg')!r}")

    kid = header.get("kid") or keyset.kid
    public_key = keyset.public_keys.get(kid)
    if public_key is None:
        raise TokenVerificationError("INVALID_TOKEN", f"Unknown signing key {kid!r}")

    try:
        return jwt.decode(
            token,
            public_key,
            algorithms=[ALGORITHM],
            issuer=keyset.issuer,
            options={"require": required},
        )
    except jwt.ExpiredSignatureError as e:
        raise TokenVerificationError("EXPIRED", "Token expired") from e
    except jwt.InvalidTokenError as e:
        raise TokenVerificationError("INVALID_TOKEN", f"Invalid token: {e}") from e


# ──────────────────────────────────────────────
# Daily meal tokens
# ──────────────────────────────────────────────

def sign_daily_token(customer_id, service_date, jti, issued_at, expires_at):
    """Sign a meal token binding a customer to one service date."""
    return _sign(DAILY_TOKEN, {
        "sub": str(customer_id),
        "service_date": service_date.isoformat(),
        "jti": jti,
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
    })


def verify_daily_token(token):
    """Verify a meal token and return its claims.

    Raises TokenVerificationError (code EXPIRED or INVALID_TOKEN).
    """
    claims = _verify(DAILY_TOKEN, token, ["sub", "jti", "exp", "iat", "iss", "service_date"])
    try:
        datetime.strptime(claims["service_date"], "%Y-%m-%d")
    except (TypeError, ValueError) as e:
        raise TokenVerificationError("INVALID_TOKEN", "Malformed service_date claim") from e
    return claims


# ──────────────────────────────────────────────
# Kiosk device assertions
# ──────────────────────────────────────────────

def sign_device_assertion(kiosk_id, location, jti, expires_at):
    """Sign a kiosk session assertion."""
    now = datetime.now(timezone.utc)
    return _sign(DEVICE, {
        "sub": "kiosk",
        "kiosk_id": kiosk_id,
        "location": location,
        "jti": jti,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    })


def verify_device_assertion(token):
    """Verify a kiosk session assertion and return its claims."""
    claims = _verify(DEVICE, token, ["sub", "jti", "exp", "iat", "iss"])
    if claims.get("sub") != "kiosk" or not claims.get("kiosk_id"):
        raise TokenVerificationError("INVALID_TOKEN", "Not a kiosk assertion")
    return claims
