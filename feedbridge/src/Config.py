"""Config: Bridge settings, executor credentials and the offer-anchor map."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from urllib.parse import urlparse

import bech32

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when a required setting is missing or invalid."""

    pass


def is_valid_url(url: str | None) -> bool:
    """Check that ``url`` is an absolute http(s) URL."""
    if not url:
        return False
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def is_valid_account(address: str | None) -> bool:
    """Check that ``address`` is a well-formed bech32 account address."""
    if not address:
        return False
    hrp, data = bech32.bech32_decode(address)
    return hrp is not None and data is not None


def _read_json(path: str, what: str) -> dict:
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"{what} file {path} does not exist") from e
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"{what} file {path} is unreadable: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{what} file {path} must contain a JSON object")
    return data


@dataclass(frozen=True)
class ExecutorCredentials:
    """External-initiator credentials for the executor's run endpoint.

    :ivar access_key: Value of the access-key header.
    :ivar secret: Value of the secret header.
    """

    access_key: str
    secret: str

    @classmethod
    def from_file(cls, path: str) -> ExecutorCredentials:
        """Load credentials from ``{"EI_IC_ACCESSKEY": ..., "EI_IC_SECRET": ...}``.

        :param path: Credentials file path.
        :returns: Loaded credentials.
        :raises ConfigError: If the file is missing, unreadable or incomplete.
        """
        data = _read_json(path, "Credentials")
        access_key = data.get("EI_IC_ACCESSKEY")
        secret = data.get("EI_IC_SECRET")
        if not access_key or not secret:
            raise ConfigError(
                f"Credentials file {path} must define EI_IC_ACCESSKEY and EI_IC_SECRET"
            )
        return cls(access_key=access_key, secret=secret)


class OfferAnchorMap:
    """Maps job names to the anchor offer a price push continues from.

    The file is re-read on each lookup so an operator can rotate anchor
    offers without restarting the bridge.

    :ivar path: JSON file of ``{jobName: offerId}``.
    """

    def __init__(self, path: str) -> None:
        self.path = path

    def load(self) -> dict[str, int | str]:
        return _read_json(self.path, "Offers")

    def get(self, job_name: str) -> int | str:
        """Return the anchor offer id for a job.

        :param job_name: Feed name.
        :returns: Offer id (numeric where the file stores a number).
        :raises ConfigError: If no anchor is configured for the job.
        """
        anchors = self.load()
        if job_name not in anchors:
            raise ConfigError(f"No anchor offer configured for {job_name} in {self.path}")
        offer_id = anchors[job_name]
        if isinstance(offer_id, str) and offer_id.isdigit():
            return int(offer_id)
        return offer_id


@dataclass
class BridgeConfig:
    """All settings for a bridge process.

    :ivar executor_url: Executor base URL for job runs.
    :ivar account: Bech32 account that submits prices.
    :ivar port: Inbound HTTP port.
    :ivar host: Inbound HTTP bind address.
    :ivar poll_interval: Heartbeat period in seconds.
    :ivar price_query_interval: Deviation/round watch period in seconds.
    :ivar decimal_places: Decimal places of the executor's integer results.
    :ivar deviation_threshold: Percent change that triggers an update.
    :ivar submit_retries: Attempts for executor calls and price pushes.
    :ivar ledger_rpc: Node RPC URL.
    :ivar chain_id: Chain id for transactions.
    :ivar cli_binary: Chain CLI executable.
    :ivar state_file: Persisted state path.
    :ivar credentials_file: Executor credentials path.
    :ivar offers_file: Offer-anchor map path.
    :ivar align_start: Start the drivers on the next whole minute.
    :ivar job_timeout: Upper bound on one job's round check, in seconds.
    """

    executor_url: str
    account: str
    port: int = 3000
    host: str = "0.0.0.0"
    poll_interval: int = 60
    price_query_interval: int = 12
    decimal_places: int = 6
    deviation_threshold: float = 1.0
    submit_retries: int = 3
    ledger_rpc: str = "http://0.0.0.0:26657"
    chain_id: str = "agoric"
    cli_binary: str = "agd"
    state_file: str = "data/middleware_state.json"
    credentials_file: str = "config/ei_credentials.json"
    offers_file: str = "config/offers.json"
    align_start: bool = True
    job_timeout: float = 30.0

    @property
    def settlement_delay(self) -> float:
        """Seconds to wait after a broadcast before checking it landed."""
        return float(self.price_query_interval + 1)

    def validate(self) -> None:
        """Check every setting; fatal problems raise.

        :raises ConfigError: On the first invalid setting.
        """
        if not is_valid_url(self.executor_url):
            raise ConfigError("$EI_CHAINLINKURL is required and must be an http(s) URL")
        if not is_valid_url(self.ledger_rpc):
            raise ConfigError("$AGORIC_RPC must be an http(s) URL")
        if not is_valid_account(self.account):
            raise ConfigError("$FROM is required and must be a bech32 account address")
        if not 0 < self.port < 65536:
            raise ConfigError(f"Invalid port {self.port}")
        if self.poll_interval < 1:
            raise ConfigError("$POLL_INTERVAL must be at least 1 second")
        if self.price_query_interval < 1:
            raise ConfigError("$PRICE_QUERY_INTERVAL must be at least 1 second")
        if self.decimal_places < 0:
            raise ConfigError("$DECIMAL_PLACES must not be negative")
        if self.deviation_threshold <= 0:
            raise ConfigError("$PRICE_DEVIATION_PERC must be positive")
        if self.submit_retries < 1:
            raise ConfigError("$SUBMIT_RETRIES must be at least 1")
        if self.job_timeout <= 0:
            raise ConfigError("Job timeout must be positive")
        for name, value in (
            ("$STATE_FILE", self.state_file),
            ("$CREDENTIALS_FILE", self.credentials_file),
            ("$OFFERS_FILE", self.offers_file),
        ):
            if not value:
                raise ConfigError(f"{name} is required")
