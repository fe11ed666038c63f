"""
Client configuration.

Configuration is constructor-level only: an Environment picks the
defaults, ClientOptions overrides them. Nothing is read from files or the
process environment (apart from the log level, see logging_setup).

Per environment:
    - default endpoint
    - legacy network passphrase, per legacy version
    - v2 asset issuer
"""

from __future__ import annotations

import base64
from dataclasses import dataclass
from enum import StrEnum

from nexus_pay.errors import ConfigurationError
from nexus_pay.keys import KEY_SIZE, PrivateKey, PublicKey
from nexus_pay.memo import MAX_APP_INDEX
from nexus_pay.models import Commitment, LedgerVersion


class Environment(StrEnum):
    TEST = "test"
    PROD = "prod"


_ENDPOINTS = {
    Environment.TEST: "https://api.agorainfra.dev",
    Environment.PROD: "https://api.agorainfra.net",
}

_PASSPHRASES = {
    (Environment.TEST, LedgerVersion.LEGACY_V3): "Kin Testnet ; December 2018",
    (Environment.PROD, LedgerVersion.LEGACY_V3): "Kin Mainnet ; December 2018",
    (Environment.TEST, LedgerVersion.LEGACY_V2): "Kin Playground Network ; June 2018",
    (Environment.PROD, LedgerVersion.LEGACY_V2): "Public Global Kin Ecosystem Network ; June 2018",
}

# v2 issuers in the legacy ledger's base32 account encoding.
_V2_ISSUERS = {
    Environment.TEST: "GBC3SG6NGTSZ2OMH3FFGB7UVRQWILW367U4GSOOF4TFSZONV42UJXUH7",
    Environment.PROD: "GDF42M3IPERQCBLWFEZKQRK77JQ65SCKTU3CW36HZVCNXEQQWLWZ5KJN",
}


def _account_id_key(address: str) -> PublicKey:
    """Public key inside a base32 account ID (version byte, key, checksum)."""
    raw = base64.b32decode(address)
    return PublicKey(raw[1 : 1 + KEY_SIZE])


def default_endpoint(env: Environment) -> str:
    return _ENDPOINTS[env]


def network_passphrase(env: Environment, version: LedgerVersion) -> str:
    """Passphrase bound into legacy transaction hashes.

    Raises:
        ConfigurationError: For the token ledger, which has none.
    """
    try:
        return _PASSPHRASES[(env, version)]
    except KeyError:
        raise ConfigurationError(f"no network passphrase for ledger version {version}") from None


def v2_issuer(env: Environment) -> PublicKey:
    return _account_id_key(_V2_ISSUERS[env])


@dataclass(frozen=True)
class ClientOptions:
    """Tunables for a Client.

    Attributes:
        ledger_version: Initial ledger version (2, 3 or 4).
        app_index: App index embedded in structured memos (0 = none).
        max_retries: Attempt bound for transient RPC failures and for
            empty token-account resolutions.
        max_nonce_retries: Attempt bound for BadNonce resubmissions.
        min_delay: First RPC backoff delay, seconds.
        max_delay: Largest RPC backoff delay, seconds.
        default_commitment: Commitment used when a call passes none.
        desired_ledger_version: Version the client would like to be served;
            sent with legacy requests.
        whitelist_key: Optional legacy co-signing key.
        endpoint: Overrides the environment's endpoint.
        cache_size: Token-account cache capacity.
        cache_ttl: Token-account cache entry lifetime, seconds.
    """

    ledger_version: int = LedgerVersion.LEGACY_V3
    app_index: int = 0
    max_retries: int = 10
    max_nonce_retries: int = 3
    min_delay: float = 0.5
    max_delay: float = 10.0
    default_commitment: Commitment = Commitment.SINGLE
    desired_ledger_version: int | None = None
    whitelist_key: PrivateKey | None = None
    endpoint: str | None = None
    cache_size: int = 500
    cache_ttl: float = 300.0

    def __post_init__(self) -> None:
        if not 0 <= self.app_index <= MAX_APP_INDEX:
            raise ValueError(f"app index must be between 0 and {MAX_APP_INDEX}")
        if self.min_delay < 0 or self.max_delay < self.min_delay:
            raise ValueError("delays must satisfy 0 <= min_delay <= max_delay")

    def validated_version(self) -> LedgerVersion:
        """The initial version as a LedgerVersion.

        Raises:
            ConfigurationError: If the version is not 2, 3 or 4.
        """
        try:
            return LedgerVersion(self.ledger_version)
        except ValueError:
            raise ConfigurationError(
                f"unsupported ledger version: {self.ledger_version}"
            ) from None
