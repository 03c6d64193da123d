#!/usr/bin/env python3
"""
approval_auditor.py
===================

This tool audits the token approvals a wallet has granted across one or more
chains. Outstanding ERC‑20 allowances and NFT operator approvals are read from
the Covalent indexing API (one request per approval kind and chain) using the
`requests` package. Each approval is tagged with the risks it carries and an
unsigned revocation transaction is built for it.

Risk tags:

* ``unlimited``     – the ERC‑20 allowance is the ``UNLIMITED`` sentinel.
* ``stale``         – the ERC‑20 approval was signed more than one calendar
                      year ago.
* ``unlimited_nft`` – the operator may move every token id of an NFT
                      collection (``setApprovalForAll``).

Revocations are ``approve(spender, 0)`` for ERC‑20 tokens and
``setApprovalForAll(operator, false)`` for NFT collections. Call data is built
from precomputed function selectors, so no ABI library is needed. Mixed-case
addresses must carry a valid EIP‑55 checksum (checked with `eth-utils`)
before a payload is built. Nothing is ever signed or broadcast.

Chains are fetched concurrently. A chain that fails is logged and left out of
the result; the remaining chains are still reported. Note that
``revoke_tx_data`` only contains the payloads that could be built, so once a
payload has been dropped it is no longer index-aligned with ``approvals``.

See README.md for usage instructions and examples.
"""

from __future__ import annotations

import argparse
import csv
import enum
import json
import logging
import os
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from itertools import zip_longest
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import quote

import requests
from dotenv import find_dotenv, load_dotenv
from eth_utils import is_checksum_address, is_hex_address
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry


# ----------------------------------------------------------------------------
# Constants and configuration
# ----------------------------------------------------------------------------

DEFAULT_BASE_URL = "https://api.covalenthq.com/v1"
DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_RETRIES = 2
DEFAULT_PORT = 8080
# Upper bound on concurrent chain fetches per audit
DEFAULT_MAX_WORKERS = 8

# Precomputed function selectors, see
# https://docs.soliditylang.org/en/latest/abi-spec.html#function-selector
APPROVE_SELECTOR = "0x095ea7b3"               # keccak("approve(address,uint256)")[:4]
SET_APPROVAL_FOR_ALL_SELECTOR = "0xa22cb465"  # keccak("setApprovalForAll(address,bool)")[:4]

# Values returned by the indexing API
UNLIMITED_ALLOWANCE = "UNLIMITED"
ALL_TOKEN_IDS = "ALL"
UNKNOWN_TOKEN_NAME = "Unknown"

RISK_UNLIMITED = "unlimited"
RISK_STALE = "stale"
RISK_UNLIMITED_NFT = "unlimited_nft"

ZERO_WORD = "0" * 64

logger = logging.getLogger("approval_auditor")


class AuditorError(Exception):
    """Base class for all errors raised by the auditor."""


class UpstreamError(AuditorError, RuntimeError):
    """The indexing API could not be reached or returned an unusable response."""


class ConfigurationError(AuditorError, RuntimeError):
    """Required configuration is missing or malformed."""


class InvalidAuditInput(AuditorError, ValueError):
    """The wallet or chain list of an audit request is malformed."""


@dataclass
class AuditorConfig:
    api_key: Optional[str] = None
    base_url: str = DEFAULT_BASE_URL
    timeout: float = DEFAULT_TIMEOUT
    max_retries: int = DEFAULT_MAX_RETRIES
    port: int = DEFAULT_PORT
    max_workers: int = DEFAULT_MAX_WORKERS


def _env_number(env: Dict[str, str], name: str, cast, default):
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


def load_config(env: Optional[Dict[str, str]] = None) -> AuditorConfig:
    """Build an :class:`AuditorConfig` from environment variables."""
    if env is None:
        env = dict(os.environ)
    return AuditorConfig(
        api_key=env.get("COVALENT_API_KEY") or None,
        base_url=(env.get("COVALENT_BASE_URL") or DEFAULT_BASE_URL).rstrip("/"),
        timeout=_env_number(env, "AUDITOR_HTTP_TIMEOUT", float, DEFAULT_TIMEOUT),
        max_retries=_env_number(env, "AUDITOR_MAX_RETRIES", int, DEFAULT_MAX_RETRIES),
        port=_env_number(env, "PORT", int, DEFAULT_PORT),
        max_workers=_env_number(env, "AUDITOR_MAX_WORKERS", int, DEFAULT_MAX_WORKERS),
    )


# ----------------------------------------------------------------------------
# Data model
# ----------------------------------------------------------------------------

class ApprovalKind(enum.Enum):
    FUNGIBLE = "ERC20"
    NON_FUNGIBLE = "NFT"


@dataclass
class ApprovalRecord:
    kind: ApprovalKind
    chain: str
    token_address: str
    token_name: str
    spender: str
    allowance: Optional[str] = None
    last_updated: Optional[str] = None
    approved_all: bool = False

    def as_dict(self) -> Dict[str, Any]:
        """Return the record in its response shape."""
        record: Dict[str, Any] = {
            "type": self.kind.value,
            "chain": self.chain,
            "token_address": self.token_address,
            "token_name": self.token_name,
            "spender": self.spender,
        }
        if self.kind is ApprovalKind.FUNGIBLE:
            record["allowance"] = self.allowance
            record["last_updated"] = self.last_updated
        else:
            record["approved_all"] = self.approved_all
        return record


@dataclass
class RevocationPayload:
    to: str
    data: str
    value: str = "0"

    def as_dict(self) -> Dict[str, str]:
        return {"to": self.to, "data": self.data, "value": self.value}


@dataclass
class PayloadResult:
    """Outcome of building one revocation payload.

    Exactly one of ``payload`` and ``reason`` is set.
    """

    payload: Optional[RevocationPayload] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.payload is not None


@dataclass
class ChainAudit:
    chain: str
    approvals: List[ApprovalRecord] = field(default_factory=list)
    risk_flags: List[List[str]] = field(default_factory=list)
    revoke_attempts: List[PayloadResult] = field(default_factory=list)

    def add(self, record: ApprovalRecord, risks: List[str], attempt: PayloadResult) -> None:
        self.approvals.append(record)
        self.risk_flags.append(risks)
        self.revoke_attempts.append(attempt)


@dataclass
class AuditResult:
    approvals: List[ApprovalRecord] = field(default_factory=list)
    risk_flags: List[List[str]] = field(default_factory=list)
    revoke_tx_data: List[RevocationPayload] = field(default_factory=list)
    # Kept for logging and the CLI summary; not part of the response.
    failed_chains: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        """Return the response body of an audit."""
        return {
            "approvals": [a.as_dict() for a in self.approvals],
            "risk_flags": [list(r) for r in self.risk_flags],
            "revoke_tx_data": [p.as_dict() for p in self.revoke_tx_data],
        }


# ----------------------------------------------------------------------------
# Indexing API client
# ----------------------------------------------------------------------------

class CovalentClient:
    """A small client for the Covalent approval endpoints.

    Every thread gets its own ``requests.Session`` so that concurrent chain
    fetches share no connection state. Idempotent GETs are retried with
    exponential backoff on rate limiting and server errors. Call :meth:`close`
    (or use the client as a context manager) to release the sessions.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> None:
        if not api_key:
            raise ConfigurationError("COVALENT_API_KEY is not set.")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self._local = threading.local()
        self._sessions: List[requests.Session] = []
        self._sessions_lock = threading.Lock()

    def _build_session(self) -> requests.Session:
        session = requests.Session()
        session.headers.update({
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        })
        retry = Retry(
            total=self.max_retries,
            backoff_factor=0.5,
            status_forcelist=(429, 500, 502, 503, 504),
            allowed_methods=frozenset(["GET"]),
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry)
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        return session

    @property
    def session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = self._build_session()
            self._local.session = session
            with self._sessions_lock:
                self._sessions.append(session)
        return session

    def close(self) -> None:
        """Close every session opened by this client."""
        with self._sessions_lock:
            sessions, self._sessions = self._sessions, []
        for session in sessions:
            session.close()
        self._local = threading.local()

    def __enter__(self) -> "CovalentClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _get_items(self, url: str) -> List[dict]:
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            raise UpstreamError(f"Request to {url} failed: {e}") from e
        if response.status_code != 200:
            raise UpstreamError(
                f"HTTP {response.status_code} from {url}: {response.text[:200]}"
            )
        try:
            body = response.json()
        except ValueError as e:
            raise UpstreamError(f"Undecodable response from {url}: {e}") from e
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict):
            return []
        return data.get("items") or []

    def _url(self, chain: str, endpoint: str, wallet: str) -> str:
        # "/" in a chain or wallet is escaped and never starts a new segment.
        return f"{self.base_url}/{quote(chain, safe='')}/{endpoint}/{quote(wallet, safe='')}/"

    def get_erc20_approvals(self, chain: str, wallet: str) -> List[dict]:
        """Return the raw ERC‑20 approval items for a wallet on a chain."""
        return self._get_items(self._url(chain, "approvals", wallet))

    def get_nft_approvals(self, chain: str, wallet: str) -> List[dict]:
        """Return the raw NFT approval items for a wallet on a chain."""
        return self._get_items(self._url(chain, "nft/approvals", wallet))


# ----------------------------------------------------------------------------
# Risk classification
# ----------------------------------------------------------------------------

def one_year_before(now: datetime) -> datetime:
    """Return ``now`` with the year decremented by one.

    A leap day has no counterpart in the previous year and rolls over to
    March 1st.
    """
    try:
        return now.replace(year=now.year - 1)
    except ValueError:
        return now.replace(year=now.year - 1, month=3, day=1)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO‑8601 timestamp from the API; naive values are UTC."""
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.debug(f"Ignoring unparseable timestamp {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def classify_approval(record: ApprovalRecord, now: Optional[datetime] = None) -> List[str]:
    """Return the risk tags of an approval."""
    if record.kind is ApprovalKind.NON_FUNGIBLE:
        return [RISK_UNLIMITED_NFT]
    risks: List[str] = []
    if record.allowance == UNLIMITED_ALLOWANCE:
        risks.append(RISK_UNLIMITED)
    signed_at = parse_timestamp(record.last_updated)
    if signed_at is not None:
        if now is None:
            now = datetime.now(timezone.utc)
        if signed_at < one_year_before(now):
            risks.append(RISK_STALE)
    return risks


# ----------------------------------------------------------------------------
# Revocation payloads
# ----------------------------------------------------------------------------

def is_valid_address(addr: Any) -> bool:
    """Return True for a 0x-prefixed, 20 byte hex address.

    All-lowercase and all-uppercase addresses carry no checksum and are
    accepted as is; mixed-case addresses must pass the EIP‑55 check.
    """
    if not isinstance(addr, str) or not addr.startswith("0x"):
        return False
    if not is_hex_address(addr):
        return False
    digits = addr[2:]
    if digits == digits.lower() or digits == digits.upper():
        return True
    return is_checksum_address(addr)


def encode_address(addr: str) -> str:
    """ABI-encode an address as a left padded 32 byte word (no 0x prefix)."""
    return addr[2:].lower().rjust(64, "0")


def _revoke_payload(selector: str, contract: str, counterparty: str) -> PayloadResult:
    for label, addr in (("contract", contract), ("counterparty", counterparty)):
        if not is_valid_address(addr):
            reason = f"malformed {label} address {addr!r}"
            logger.warning(f"Skipping revocation payload: {reason}")
            return PayloadResult(reason=reason)
    data = selector + encode_address(counterparty) + ZERO_WORD
    return PayloadResult(payload=RevocationPayload(to=contract, data=data))


def generate_erc20_revoke(token_address: str, spender: str) -> PayloadResult:
    """Build ``approve(spender, 0)`` call data for an ERC‑20 token."""
    return _revoke_payload(APPROVE_SELECTOR, token_address, spender)


def generate_nft_revoke(collection_address: str, operator: str) -> PayloadResult:
    """Build ``setApprovalForAll(operator, false)`` call data for a collection."""
    return _revoke_payload(SET_APPROVAL_FOR_ALL_SELECTOR, collection_address, operator)


def generate_revoke(record: ApprovalRecord) -> PayloadResult:
    if record.kind is ApprovalKind.NON_FUNGIBLE:
        return generate_nft_revoke(record.token_address, record.spender)
    return generate_erc20_revoke(record.token_address, record.spender)


# ----------------------------------------------------------------------------
# Per-chain processing and aggregation
# ----------------------------------------------------------------------------

def process_chain(client: CovalentClient, chain: str, wallet: str) -> ChainAudit:
    """Fetch, classify and build revocations for the approvals on one chain.

    Errors from either API call propagate to the caller.
    """
    audit = ChainAudit(chain=chain)

    for token in client.get_erc20_approvals(chain, wallet):
        for spender in token.get("spenders") or []:
            spender_address = spender.get("spender_address")
            if not spender_address:
                continue
            record = ApprovalRecord(
                kind=ApprovalKind.FUNGIBLE,
                chain=chain,
                token_address=token.get("token_address"),
                token_name=token.get("ticker_symbol") or UNKNOWN_TOKEN_NAME,
                spender=spender_address,
                allowance=spender.get("allowance"),
                last_updated=spender.get("block_signed_at"),
            )
            audit.add(record, classify_approval(record), generate_revoke(record))

    for nft in client.get_nft_approvals(chain, wallet):
        for spender in nft.get("spenders") or []:
            spender_address = spender.get("spender_address")
            if not spender_address:
                continue
            # Only blanket approvals are reported.
            if spender.get("token_ids_approved") != ALL_TOKEN_IDS:
                continue
            record = ApprovalRecord(
                kind=ApprovalKind.NON_FUNGIBLE,
                chain=chain,
                token_address=nft.get("contract_address"),
                token_name=nft.get("contract_ticker_symbol") or UNKNOWN_TOKEN_NAME,
                spender=spender_address,
                approved_all=True,
            )
            audit.add(record, classify_approval(record), generate_revoke(record))

    logger.debug(f"{chain}: {len(audit.approvals)} approvals")
    return audit


def validate_audit_input(wallet: Any, chains: Any) -> None:
    """Reject malformed audit requests before anything is fetched."""
    if not isinstance(wallet, str) or not wallet.strip():
        raise InvalidAuditInput("'wallet' must be a non-empty string.")
    if not isinstance(chains, (list, tuple)):
        raise InvalidAuditInput("'chains' must be a list of chain names.")
    for chain in chains:
        if not isinstance(chain, str) or not chain.strip():
            raise InvalidAuditInput(f"Invalid chain name {chain!r}.")


def audit_wallet(
    wallet: str,
    chains: Sequence[str],
    api_key: Optional[str] = None,
    client: Optional[CovalentClient] = None,
    config: Optional[AuditorConfig] = None,
    max_workers: Optional[int] = None,
) -> AuditResult:
    """Audit ``wallet`` on every chain in ``chains``.

    Chains are fetched concurrently and joined in the order they were
    requested. A chain whose fetch fails is logged and skipped, so the call
    only raises for malformed input or missing configuration.
    """
    validate_audit_input(wallet, chains)
    if client is not None:
        if max_workers is None:
            max_workers = config.max_workers if config is not None else DEFAULT_MAX_WORKERS
        return _audit_chains(client, wallet, chains, max_workers)

    if config is None:
        config = load_config()
    if max_workers is None:
        max_workers = config.max_workers
    key = api_key or config.api_key
    if not key:
        raise ConfigurationError("COVALENT_API_KEY is not set on the server.")
    with CovalentClient(
        key,
        base_url=config.base_url,
        timeout=config.timeout,
        max_retries=config.max_retries,
    ) as owned_client:
        return _audit_chains(owned_client, wallet, chains, max_workers)


def _audit_chains(
    client: CovalentClient, wallet: str, chains: Sequence[str], max_workers: int
) -> AuditResult:
    result = AuditResult()
    if not chains:
        return result

    logger.info(f"Auditing {wallet} on {len(chains)} chain(s): {', '.join(chains)}")
    workers = max(1, min(len(chains), max_workers))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = [
            executor.submit(process_chain, client, chain, wallet) for chain in chains
        ]
        attempts: List[PayloadResult] = []
        for chain, future in zip(chains, futures):
            try:
                chain_audit = future.result()
            except Exception as e:
                logger.error(f"Chain processing failed for {chain}: {e}")
                result.failed_chains.append(chain)
                continue
            result.approvals.extend(chain_audit.approvals)
            result.risk_flags.extend(chain_audit.risk_flags)
            attempts.extend(chain_audit.revoke_attempts)

    result.revoke_tx_data = [a.payload for a in attempts if a.ok]
    dropped = len(attempts) - len(result.revoke_tx_data)
    if dropped:
        logger.warning(f"Dropped {dropped} revocation payload(s) that could not be built")
    logger.info(
        f"Found {len(result.approvals)} approvals, "
        f"{sum(1 for r in result.risk_flags if r)} flagged"
    )
    return result


# ----------------------------------------------------------------------------
# Command line interface
# ----------------------------------------------------------------------------

def render_table(headers: Sequence[str], rows: Sequence[Sequence[str]]) -> str:
    """Render rows as a boxed text table; cells may span several lines."""
    split_rows = [[cell.split("\n") for cell in row] for row in rows]
    widths = [
        max([len(header)] + [len(line) for row in split_rows for line in row[col]])
        for col, header in enumerate(headers)
    ]
    border = "+" + "+".join("-" * (w + 2) for w in widths) + "+"

    def format_line(cells: Sequence[str]) -> str:
        return "|" + "|".join(f" {c.ljust(w)} " for c, w in zip(cells, widths)) + "|"

    out = [border, format_line(headers), border]
    for row in split_rows:
        for line in zip_longest(*row, fillvalue=""):
            out.append(format_line(line))
        out.append(border)
    return "\n".join(out)


def print_table(result: AuditResult) -> None:
    """Print the approvals, their risks and a summary to stdout."""
    if not result.approvals:
        print("No approvals found.")
    else:
        rows = []
        for approval, risks in zip(result.approvals, result.risk_flags):
            if approval.kind is ApprovalKind.FUNGIBLE:
                allowance = approval.allowance or ""
            else:
                allowance = "ALL"
            rows.append([
                approval.chain,
                approval.kind.value,
                f"{approval.token_name}\n{approval.token_address}",
                approval.spender,
                allowance,
                ", ".join(risks) or "none",
            ])
        print(render_table(["Chain", "Type", "Token", "Spender", "Allowance", "Risks"], rows))
    flagged = sum(1 for r in result.risk_flags if r)
    print(
        f"Summary: {len(result.approvals)} approvals, {flagged} flagged, "
        f"{len(result.revoke_tx_data)} revoke transactions."
    )
    if result.failed_chains:
        print(f"Chains that could not be audited: {', '.join(result.failed_chains)}")
    if flagged:
        print(
            "\nRecommended: sign and send the revoke transactions from the "
            "exported JSON, or use https://revoke.cash."
        )


CSV_HEADERS = [
    "chain",
    "type",
    "token_address",
    "token_name",
    "spender",
    "allowance",
    "last_updated",
    "approved_all",
    "risk_flags",
]


def export_result(result: AuditResult, outfile: str) -> None:
    """Export the audit to JSON (full response) or CSV (one row per approval)."""
    lower = outfile.lower()
    if lower.endswith(".json"):
        with open(outfile, "w", encoding="utf-8") as f:
            json.dump(result.as_dict(), f, indent=2)
    elif lower.endswith(".csv"):
        with open(outfile, "w", newline="", encoding="utf-8") as csvfile:
            writer = csv.DictWriter(csvfile, fieldnames=CSV_HEADERS, restval="")
            writer.writeheader()
            for approval, risks in zip(result.approvals, result.risk_flags):
                row = approval.as_dict()
                row["risk_flags"] = ";".join(risks)
                writer.writerow(row)
    else:
        raise ValueError("Unknown export format; use .json or .csv extension.")
    logger.info(f"Exported {len(result.approvals)} approvals to {outfile}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Flag unlimited or stale ERC‑20 / NFT approvals and build revoke transactions."
    )
    parser.add_argument(
        "--wallet",
        required=True,
        help="Wallet address or ENS name to audit.",
    )
    parser.add_argument(
        "--chains",
        nargs="+",
        default=["eth-mainnet"],
        help="Covalent chain names (default: eth-mainnet).",
    )
    parser.add_argument(
        "--api-key",
        default=None,
        help="Covalent API key (default: $COVALENT_API_KEY).",
    )
    parser.add_argument(
        "--export",
        type=str,
        default=None,
        help="Export results to a file (.json or .csv).",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging.",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s:%(name)s:%(message)s",
    )
    load_dotenv(find_dotenv(usecwd=True))
    try:
        config = load_config()
        result = audit_wallet(args.wallet, args.chains, api_key=args.api_key, config=config)
    except (ConfigurationError, InvalidAuditInput) as e:
        logger.error(str(e))
        return 1
    print_table(result)
    if args.export:
        export_result(result, args.export)
    return 0


if __name__ == "__main__":
    sys.exit(main())
