#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
ENS .eth snipe checker: reads expiry from the base registrar and prices names
that are past their 90-day grace period.

  nameExpires(uint256) on 0x57f1887a8BF19b14fC0dF6Fd9B2acc9Af147eA85

Features:
- Keccak-256 labelhash, same as the on-chain registrar
- Async JSON-RPC eth_call with aiohttp (Alchemy or any mainnet endpoint)
- Fixed-size batches, concurrent inside a batch, sequential across batches
  with a pacing delay (rate limit hygiene)
- Optional per-domain retry with exponential backoff
- Premium decay price (halves daily after grace end) + base registration price
- Input: domains on the command line, a text file, or a CSV column
- Output: JSON results file, merged with what is already there (atomic write)
- Optional ETH conversion of prices (CoinGecko)

Install:
  pip install aiohttp requests python-dotenv web3 eth-abi

Run:
  ALCHEMY_API_KEY=... python ens_snipe.py --csv names.csv --column domain
"""

from __future__ import annotations

import argparse
import asyncio
import csv
import dataclasses
import datetime as dt
import itertools
import json
import logging
import os
import random
import sys
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, Iterator, List, Optional, Sequence

import aiohttp
import requests
from dotenv import load_dotenv
from eth_abi import decode as abi_decode, encode as abi_encode
from eth_abi.exceptions import DecodingError
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from web3 import Web3

ENS_SUFFIX = ".eth"
ENS_REGISTRAR_ADDRESS = "0x57f1887a8BF19b14fC0dF6Fd9B2acc9Af147eA85"
NAME_EXPIRES_SELECTOR = bytes(Web3.keccak(text="nameExpires(uint256)")[:4])

ALCHEMY_URL_TEMPLATE = "https://eth-mainnet.g.alchemy.com/v2/{api_key}"
COINGECKO_PRICE_URL = "https://api.coingecko.com/api/v3/simple/price"

GRACE_PERIOD = dt.timedelta(days=90)
PREMIUM_START_PRICE = 100_000_000
PREMIUM_NOT_ACTIVE = -1_000_000.0
REG_DAYS_DEFAULT = 30

LOOKUP_FAILED = "Failed to check expiration"
PROCESSING_FAILED = "Processing error"
EMPTY_INPUT = "Invalid input: 'domains' must be a non-empty list."

DEFAULT_BATCH_SIZE = 10
DEFAULT_DELAY_MS = 1000
DEFAULT_OUTPUT_FILE = "./out/ens_results.json"


# ---------------------------
# Errors
# ---------------------------

class ExpirationLookupError(RuntimeError):
    """A single registrar read failed (network, revert, bad payload)."""

    def __init__(self, domain: Optional[str], reason: str):
        self.domain = domain
        self.reason = reason
        super().__init__(f"expiration lookup failed for {domain or '<unknown>'}: {reason}")


class InvalidInputError(ValueError):
    pass


class BatchProcessingError(RuntimeError):
    pass


class ResultsFileError(ValueError):
    pass


# ---------------------------
# Labels + hashing
# ---------------------------

def normalize_label(name: str) -> str:
    return name[: -len(ENS_SUFFIX)] if name.endswith(ENS_SUFFIX) else name


def canonical_domain(name: str) -> str:
    return normalize_label(name) + ENS_SUFFIX


def label_hash(name: str) -> bytes:
    """Keccak-256 of the UTF-8 label (suffix stripped). 32 bytes."""
    return bytes(Web3.keccak(normalize_label(name).encode("utf-8")))


def token_id(hash_: bytes) -> int:
    return int.from_bytes(hash_, "big")


# ---------------------------
# Data models
# ---------------------------

@dataclasses.dataclass(frozen=True)
class ExpirationRecord:
    domain: str
    label: str
    expiration_timestamp: Optional[int] = None
    error: Optional[ExpirationLookupError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclasses.dataclass(frozen=True)
class SnipeResult:
    domain: str
    expiration_date: Optional[dt.datetime] = None
    grace_end: Optional[dt.datetime] = None
    snipeable: Optional[bool] = None
    price: Optional[float] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, domain: str, expiration_date: dt.datetime, grace_end: dt.datetime,
                snipeable: bool, price: float) -> "SnipeResult":
        return cls(domain=domain, expiration_date=expiration_date, grace_end=grace_end,
                   snipeable=snipeable, price=price)

    @classmethod
    def failure(cls, domain: str, error: str) -> "SnipeResult":
        return cls(domain=domain, error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self, eth_usd: Optional[float] = None) -> Dict[str, Any]:
        if not self.ok:
            return {"domain": self.domain, "error": self.error}
        row: Dict[str, Any] = {
            "domain": self.domain,
            "expiration_date": self.expiration_date.isoformat(),
            "grace_end": self.grace_end.isoformat(),
            "snipeable": self.snipeable,
            "price": self.price,
        }
        if eth_usd:
            row["price_eth"] = self.price / eth_usd
        return row


# ---------------------------
# Pricing
# ---------------------------

def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _as_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value


def premium_price(grace_end: dt.datetime, now: Optional[dt.datetime] = None) -> float:
    """
    Premium on top of the registration fee. Starts at 100M at grace end and
    halves every day after; days are rounded to the hundredth first.
    Before grace end the premium is not active and PREMIUM_NOT_ACTIVE is returned.
    """
    now = _as_utc(now or utc_now())
    elapsed = now - _as_utc(grace_end)
    if elapsed < dt.timedelta(0):
        return PREMIUM_NOT_ACTIVE
    # ties round up, e.g. 0.125 -> 0.13
    days = Decimal(repr(elapsed.total_seconds() / 86400))
    days_passed = float(days.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))
    return PREMIUM_START_PRICE * 0.5 ** days_passed


def reg_price(domain: str, days: int = REG_DAYS_DEFAULT) -> float:
    # len - 4 assumes a ".eth" suffix on the input
    length = len(domain) - 4
    if length >= 5:
        rate = 5 / 365
    elif length == 4:
        rate = 160 / 365
    else:
        rate = 640 / 365
    return rate * days


def net_reg_price(domain: str, grace_end: dt.datetime, now: Optional[dt.datetime] = None) -> float:
    return premium_price(grace_end, now) + reg_price(domain)


# ---------------------------
# Registrar client (JSON-RPC)
# ---------------------------

class RegistrarOracle:
    """Reads nameExpires(uint256) through eth_call. One request per lookup, no retry."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        rpc_url: str,
        registrar_address: str = ENS_REGISTRAR_ADDRESS,
        timeout_s: float = 20.0,
    ):
        self.session = session
        self.rpc_url = rpc_url
        self.registrar_address = Web3.to_checksum_address(registrar_address)
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._ids = itertools.count(1)

    def build_call(self, hash_: bytes) -> Dict[str, Any]:
        calldata = NAME_EXPIRES_SELECTOR + abi_encode(["uint256"], [token_id(hash_)])
        return {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": "eth_call",
            "params": [{"to": self.registrar_address, "data": "0x" + calldata.hex()}, "latest"],
        }

    async def get_expiration(self, hash_: bytes, domain: Optional[str] = None) -> int:
        payload = self.build_call(hash_)
        try:
            async with self.session.post(self.rpc_url, json=payload, timeout=self.timeout) as resp:
                if resp.status != 200:
                    raise ExpirationLookupError(domain, f"HTTP {resp.status}")
                body = await resp.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise ExpirationLookupError(domain, "timeout") from e
        except aiohttp.ClientError as e:
            raise ExpirationLookupError(domain, f"aiohttp error: {e}") from e
        except ValueError as e:
            raise ExpirationLookupError(domain, f"JSON parse error: {e}") from e

        if not isinstance(body, dict):
            raise ExpirationLookupError(domain, "malformed JSON-RPC response")
        if body.get("error"):
            err = body["error"]
            message = err.get("message") if isinstance(err, dict) else err
            raise ExpirationLookupError(domain, f"RPC error: {message}")

        return decode_expiration(body.get("result"), domain)


def decode_expiration(result: Any, domain: Optional[str] = None) -> int:
    if not isinstance(result, str) or not result.startswith("0x"):
        raise ExpirationLookupError(domain, f"unexpected result: {result!r}")
    try:
        (expires,) = abi_decode(["uint256"], bytes.fromhex(result[2:]))
    except (DecodingError, ValueError) as e:
        raise ExpirationLookupError(domain, f"decode error: {e}") from e
    return int(expires)


# ---------------------------
# Evaluation
# ---------------------------

def build_result(record: ExpirationRecord, now: dt.datetime) -> SnipeResult:
    """Turn one registrar answer into a SnipeResult. Shared by single and batch paths."""
    if not record.ok:
        return SnipeResult.failure(record.domain, LOOKUP_FAILED)
    try:
        expiration_date = dt.datetime.fromtimestamp(record.expiration_timestamp, tz=dt.timezone.utc)
        grace_end = expiration_date + GRACE_PERIOD
    except (OverflowError, OSError, ValueError):
        return SnipeResult.failure(record.domain, PROCESSING_FAILED)

    now = _as_utc(now)
    return SnipeResult.success(
        domain=record.domain,
        expiration_date=expiration_date,
        grace_end=grace_end,
        snipeable=now > grace_end,
        price=net_reg_price(canonical_domain(record.label), grace_end, now),
    )


async def fetch_record(oracle: Any, domain: str, log: logging.Logger) -> ExpirationRecord:
    label = normalize_label(domain)
    try:
        expires = await oracle.get_expiration(label_hash(label), domain=domain)
    except ExpirationLookupError as e:
        log.warning("Error fetching expiration for %s: %s", domain, e.reason)
        return ExpirationRecord(domain=domain, label=label, error=e)
    return ExpirationRecord(domain=domain, label=label, expiration_timestamp=expires)


class SnipeEvaluator:
    def __init__(self, oracle: Any, clock: Callable[[], dt.datetime] = utc_now,
                 logger: Optional[logging.Logger] = None):
        self.oracle = oracle
        self.clock = clock
        self.log = logger or logging.getLogger(__name__)

    async def evaluate(self, domain: str) -> SnipeResult:
        record = await fetch_record(self.oracle, domain, self.log)
        return build_result(record, self.clock())


# ---------------------------
# Batching
# ---------------------------

def chunked(items: Sequence[str], size: int) -> Iterator[List[str]]:
    for i in range(0, len(items), size):
        yield list(items[i : i + size])


class BatchScheduler:
    """
    Runs lookups batch by batch: every domain of a batch in flight at once,
    then a pause of pacing_delay_s before the next batch.
    Per-domain lookup failures become error results; anything else aborts the run.
    """

    def __init__(
        self,
        oracle: Any,
        batch_size: int = DEFAULT_BATCH_SIZE,
        pacing_delay_s: float = DEFAULT_DELAY_MS / 1000.0,
        max_attempts: int = 1,
        backoff_base_s: float = 0.8,
        backoff_jitter_s: float = 0.2,
        clock: Callable[[], dt.datetime] = utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        logger: Optional[logging.Logger] = None,
    ):
        if not isinstance(batch_size, int) or batch_size < 1:
            raise ValueError("batch_size must be a positive integer")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.oracle = oracle
        self.batch_size = batch_size
        self.pacing_delay_s = pacing_delay_s
        self.max_attempts = max_attempts
        self.backoff_base_s = backoff_base_s
        self.backoff_jitter_s = backoff_jitter_s
        self.clock = clock
        self.sleep = sleep
        self.log = logger or logging.getLogger(__name__)

    async def evaluate_many(self, domains: Sequence[str]) -> List[SnipeResult]:
        if not isinstance(domains, (list, tuple)) or len(domains) == 0:
            raise InvalidInputError(EMPTY_INPUT)

        try:
            now = self.clock()
            batches = list(chunked(domains, self.batch_size))
            results: List[SnipeResult] = []
            for n, batch in enumerate(batches, start=1):
                records = await asyncio.gather(*(self._fetch_with_retry(d) for d in batch))
                results.extend(build_result(r, now) for r in records)

                failed = sum(1 for r in records if not r.ok)
                self.log.info("Batch %s/%s done: size=%s failed=%s processed=%s/%s",
                              n, len(batches), len(batch), failed, len(results), len(domains))

                if n < len(batches) and self.pacing_delay_s > 0:
                    await self.sleep(self.pacing_delay_s)
            return results
        except Exception as e:
            self.log.exception("Error in batch evaluation")
            raise BatchProcessingError("Failed to process ENS domains.") from e

    async def _fetch_with_retry(self, domain: str) -> ExpirationRecord:
        record = await fetch_record(self.oracle, domain, self.log)
        attempt = 1
        while not record.ok and attempt < self.max_attempts:
            delay = self.backoff_base_s * (2 ** (attempt - 1)) + random.uniform(0, self.backoff_jitter_s)
            self.log.debug("Retrying %s after %.2fs (attempt=%s)", domain, delay, attempt)
            await self.sleep(delay)
            attempt += 1
            record = await fetch_record(self.oracle, domain, self.log)
        return record


# ---------------------------
# Input / output
# ---------------------------

def read_csv_column(path: Path, column: str) -> List[str]:
    values: List[str] = []
    with path.open("r", encoding="utf-8", newline="") as f:
        reader = csv.DictReader(f)
        if reader.fieldnames:
            reader.fieldnames = [name.strip() for name in reader.fieldnames]
        for row in reader:
            value = row.get(column)
            if value is None:
                continue
            values.append(value.strip())
    return values


def iter_input_domains(path: Path) -> Iterator[str]:
    # One domain per line, allow blank/comment lines
    for line in path.read_text(encoding="utf-8").splitlines():
        s = line.strip()
        if not s or s.startswith("#"):
            continue
        yield s


def load_existing_results(path: Path) -> List[Dict[str, Any]]:
    if not path.exists():
        return []
    raw = path.read_text(encoding="utf-8").strip()
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ResultsFileError(f"Results file is not valid JSON: {path} ({e})") from e
    if not isinstance(data, list):
        raise ResultsFileError(f"Results file must contain a JSON list: {path}")
    return data


def merge_results(existing: Iterable[Dict[str, Any]], new: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    merged: Dict[str, Dict[str, Any]] = {}
    for row in existing:
        merged[row.get("domain", "")] = row
    for row in new:
        merged[row["domain"]] = row
    return list(merged.values())


def atomic_write_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
    tmp.replace(path)


def save_results(path: Path, rows: List[Dict[str, Any]]) -> None:
    atomic_write_json(path, rows)


def build_requests_session(timeout_s: float, max_retries: int) -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=max_retries,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=("GET",),
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    session.request = _wrap_timeout(session.request, timeout_s)
    return session


def _wrap_timeout(func, timeout_s: float):
    def wrapped(*args, **kwargs):
        kwargs.setdefault("timeout", timeout_s)
        return func(*args, **kwargs)
    return wrapped


def fetch_eth_usd(session: requests.Session) -> float:
    resp = session.get(COINGECKO_PRICE_URL, params={"ids": "ethereum", "vs_currencies": "usd"})
    resp.raise_for_status()
    return float(resp.json()["ethereum"]["usd"])


# ---------------------------
# CLI
# ---------------------------

def configure_logging(verbosity: int) -> logging.Logger:
    level = logging.INFO
    if verbosity >= 2:
        level = logging.DEBUG
    elif verbosity == 0:
        level = logging.WARNING

    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    return logging.getLogger("ens_snipe")


def resolve_rpc_url(cli_value: Optional[str]) -> str:
    if cli_value:
        return cli_value
    url = os.getenv("ENS_RPC_URL", "").strip()
    if url:
        return url
    api_key = os.getenv("ALCHEMY_API_KEY", "").strip()
    if not api_key:
        raise SystemExit("Missing RPC endpoint: pass --rpc-url or set ENS_RPC_URL / ALCHEMY_API_KEY")
    return ALCHEMY_URL_TEMPLATE.format(api_key=api_key)


def collect_domains(args: argparse.Namespace) -> List[str]:
    domains: List[str] = list(args.domains or [])
    if args.input_file:
        domains.extend(iter_input_domains(Path(args.input_file)))
    if args.csv:
        domains.extend(read_csv_column(Path(args.csv), args.column))
    # de-dup, keep first occurrence
    return list(dict.fromkeys(d for d in domains if d))


async def run_checks(args: argparse.Namespace, domains: List[str], rpc_url: str,
                     log: logging.Logger) -> List[SnipeResult]:
    headers = {"Content-Type": "application/json", "Accept": "application/json"}
    async with aiohttp.ClientSession(headers=headers) as session:
        oracle = RegistrarOracle(session, rpc_url, registrar_address=args.registrar, timeout_s=args.timeout_s)
        if len(domains) == 1:
            return [await SnipeEvaluator(oracle, logger=log).evaluate(domains[0])]
        scheduler = BatchScheduler(
            oracle,
            batch_size=args.batch_size,
            pacing_delay_s=args.delay_ms / 1000.0,
            max_attempts=args.max_attempts,
            logger=log,
        )
        return await scheduler.evaluate_many(domains)


def run(args: argparse.Namespace) -> int:
    log = configure_logging(args.verbose)
    load_dotenv(dotenv_path=args.dotenv, override=False)

    if args.batch_size is None:
        args.batch_size = int(os.getenv("ENS_BATCH_SIZE", str(DEFAULT_BATCH_SIZE)))
    if args.batch_size < 1:
        raise SystemExit("--batch-size must be >= 1")
    if args.max_attempts < 1:
        raise SystemExit("--max-attempts must be >= 1")
    output = Path(args.output or os.getenv("ENS_OUTPUT_FILE") or DEFAULT_OUTPUT_FILE)

    try:
        existing = load_existing_results(output)
    except ResultsFileError as e:
        raise SystemExit(str(e))

    domains = collect_domains(args)
    if not domains:
        raise SystemExit(EMPTY_INPUT)
    if args.skip_existing:
        done = {row.get("domain") for row in existing if not row.get("error")}
        skipped = [d for d in domains if d in done]
        domains = [d for d in domains if d not in done]
        log.info("Skipping %s domains already in %s", len(skipped), output)
        if not domains:
            log.info("Nothing left to check.")
            return 0

    rpc_url = resolve_rpc_url(args.rpc_url)

    eth_usd = None
    if args.eth:
        eth_usd = fetch_eth_usd(build_requests_session(args.timeout_s, max_retries=3))
        log.info("ETH/USD quote: %.2f", eth_usd)

    try:
        results = asyncio.run(run_checks(args, domains, rpc_url, log))
    except InvalidInputError as e:
        raise SystemExit(str(e))
    except BatchProcessingError as e:
        log.error("%s (cause: %r)", e, e.__cause__)
        return 1

    rows = [r.to_dict(eth_usd) for r in results]
    save_results(output, merge_results(existing, rows))

    snipeable = sorted((r for r in results if r.ok and r.snipeable), key=lambda r: r.price)
    errors = sum(1 for r in results if not r.ok)
    for r in snipeable:
        log.info("Snipeable: %s price=%.2f grace_end=%s", r.domain, r.price, r.grace_end.isoformat())
    log.info("Done. checked=%s snipeable=%s errors=%s output=%s",
             len(results), len(snipeable), errors, output)
    return 0


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        "ens_snipe.py",
        description="Check ENS .eth names for expiry past the grace period and price them.",
    )
    p.add_argument("domains", nargs="*", help="Domains to check, e.g. vitalik.eth")
    p.add_argument("--input-file", default=None, help="File containing domains, one per line")
    p.add_argument("--csv", default=None, help="CSV file containing domains")
    p.add_argument("--column", default="domain", help="CSV column with the domain names (default: domain)")
    p.add_argument("--output", default=None,
                   help=f"Results JSON file (default: $ENS_OUTPUT_FILE or {DEFAULT_OUTPUT_FILE})")
    p.add_argument("--rpc-url", default=None, help="JSON-RPC endpoint (default: $ENS_RPC_URL or Alchemy)")
    p.add_argument("--registrar", default=ENS_REGISTRAR_ADDRESS, help="Base registrar contract address")
    p.add_argument("--batch-size", type=int, default=None,
                   help=f"Lookups per batch (default: $ENS_BATCH_SIZE or {DEFAULT_BATCH_SIZE})")
    p.add_argument("--delay-ms", type=int, default=DEFAULT_DELAY_MS,
                   help=f"Pause between batches in ms (default: {DEFAULT_DELAY_MS})")
    p.add_argument("--max-attempts", type=int, default=1, help="Lookup attempts per domain (default: 1)")
    p.add_argument("--timeout-s", type=float, default=20.0)
    p.add_argument("--skip-existing", action="store_true", help="Skip domains already in the results file")
    p.add_argument("--eth", action="store_true", help="Also store prices converted to ETH (CoinGecko)")
    p.add_argument("--dotenv", default=None, help="Path to .env file")
    p.add_argument("-v", "--verbose", action="count", default=1, help="Increase verbosity (use -vv for debug)")
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    return run(args)


if __name__ == "__main__":
    try:
        raise SystemExit(main())
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        raise SystemExit(130)
