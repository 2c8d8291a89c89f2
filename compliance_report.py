#!/usr/bin/env python3
"""
Quarterly compliance report builder (OFAC + CIP exports).

Data sources:
- Plaid Identity Verification (KYC): one listing per customer reference
- Middesk (KYB): paginated business listing + per-business details

What this script provides:
- OFAC screening export: the original ledger with first/last name columns
  inserted after "hits"
- CIP export: one row per identity verification, joined to its business record
  (external id substring match, then bounded edit-distance fallback)
- Raw JSON dumps of both providers, redacted unless --show-sensitive
- Offline regeneration of the CSVs from earlier JSON dumps

"""

from __future__ import annotations

import argparse
import datetime as dt
import json
import os
import re
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import pandas as pd
import pytz
import requests
from tqdm import tqdm

PLAID_BASE_URLS = {
    "sandbox": "https://sandbox.plaid.com",
    "development": "https://development.plaid.com",
    "production": "https://production.plaid.com",
}
MIDDESK_BASE_URLS = {
    "production": "https://api.middesk.com/v1",
    "sandbox": "https://api-sandbox.middesk.com/v1",
}

DEFAULT_TEMPLATE_ID = "idvtmp_epgCoTSYzF8A4u"
DEFAULT_TIME_ZONE = "America/Los_Angeles"
DEFAULT_OUTPUT_DIR = Path(".") / "_output"
DEFAULT_USER_AGENT = "compliance-report/1.0"

DEFAULT_REQUEST_TIMEOUT = 60
DEFAULT_REQUEST_DELAY = 0.1
DEFAULT_MAX_WORKERS = 4

# Middesk caps per_page at 30.
MIDDESK_PAGE_SIZE = 30

# Largest accepted edit distance between a customer reference and a business name.
DEFAULT_MAX_DISTANCE = 2

# Which business wins when several names are equally close: first or last seen.
TIE_BREAKS = ("first", "last")
DEFAULT_TIE_BREAK = "first"

PLAID_RESULTS_PREFIX = "plaid-verification-results"
MIDDESK_RESULTS_PREFIX = "middesk-businesses"

SENSITIVE_KEY_PARTS = ("tin", "ssn", "id_number", "tax_id", "ein", "social_security", "taxpayer_id")

# Output of redact_scalar; recognising it keeps redaction idempotent.
_MASKED_RE = re.compile(r"^(XXX-XX-\d{4}|XXXX.{4}|REDACTED)$", re.DOTALL)

CIP_COLUMNS = [
    "#",
    "Business Name",
    "Business Physical Address",
    "EIN",
    "First Name",
    "Last Name",
    "Physical Address",
    "DOB",
    "SSN",
    "Beneficial Owner",
    "Controlling Party",
    "Onboard Date",
    "created_at",
    "status",
]

BUSINESS_COLUMNS = [
    "#",
    "Business Name",
    "Business Physical Address",
    "EIN",
    "Onboard Date",
    "created_at",
    "status",
]


class ConfigurationError(Exception):
    pass


class ProviderError(Exception):
    pass


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ReportConfig:
    plaid_client_id: str
    plaid_secret: str
    plaid_env: str
    middesk_api_key: str
    middesk_env: str = "sandbox"
    template_id: str = DEFAULT_TEMPLATE_ID
    time_zone: str = DEFAULT_TIME_ZONE
    timeout: int = DEFAULT_REQUEST_TIMEOUT
    request_delay: float = DEFAULT_REQUEST_DELAY
    max_workers: int = DEFAULT_MAX_WORKERS
    user_agent: str = DEFAULT_USER_AGENT

    @property
    def plaid_base_url(self) -> str:
        return PLAID_BASE_URLS[self.plaid_env]

    @property
    def middesk_base_url(self) -> str:
        if self.middesk_env == "production":
            return MIDDESK_BASE_URLS["production"]
        return MIDDESK_BASE_URLS["sandbox"]


def load_config(environ: Mapping[str, str], **overrides: Any) -> ReportConfig:
    """
    Build a ReportConfig from an environment mapping. Raises ConfigurationError
    when a credential is missing, before anything touches the network.
    """
    required = ["PLAID_CLIENT_ID", "PLAID_SECRET", "PLAID_ENV", "MIDDESK_API_KEY"]
    missing = [k for k in required if not environ.get(k)]
    if missing:
        raise ConfigurationError(f"Missing required environment variable(s): {', '.join(missing)}")

    plaid_env = environ["PLAID_ENV"]
    if plaid_env not in PLAID_BASE_URLS:
        raise ConfigurationError(f"PLAID_ENV must be one of: {', '.join(PLAID_BASE_URLS)}")

    time_zone = environ.get("REPORT_TIME_ZONE") or DEFAULT_TIME_ZONE
    try:
        pytz.timezone(time_zone)
    except pytz.UnknownTimeZoneError:
        raise ConfigurationError(f"Unknown REPORT_TIME_ZONE: {time_zone}")

    return ReportConfig(
        plaid_client_id=environ["PLAID_CLIENT_ID"],
        plaid_secret=environ["PLAID_SECRET"],
        plaid_env=plaid_env,
        middesk_api_key=environ["MIDDESK_API_KEY"],
        middesk_env=environ.get("MIDDESK_ENV") or "sandbox",
        template_id=environ.get("PLAID_TEMPLATE_ID") or DEFAULT_TEMPLATE_ID,
        time_zone=time_zone,
        **overrides,
    )


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

def _str(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def _dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _parse_timestamp(value: Optional[str]) -> Optional[dt.datetime]:
    if not value:
        return None
    try:
        stamp = pd.Timestamp(value.strip())
    except (ValueError, OverflowError):
        return None
    if pd.isna(stamp):
        return None
    ts = stamp.to_pydatetime()
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=dt.timezone.utc)
    return ts


@dataclass(frozen=True)
class PersonName:
    given: str
    family: str


@dataclass(frozen=True)
class PostalAddress:
    street: str = ""
    street2: str = ""
    city: str = ""
    region: str = ""
    postal_code: str = ""
    country: str = ""

    def one_line(self) -> str:
        parts = [self.street, self.street2, self.city, self.region, self.postal_code, self.country]
        return " ".join(p for p in parts if p)


@dataclass(frozen=True)
class VerificationResult:
    client_user_id: str
    created_at: str
    name: Optional[PersonName]
    address: Optional[PostalAddress]
    date_of_birth: str
    id_number: str
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "VerificationResult":
        user = _dict(payload.get("user"))

        name = None
        if isinstance(user.get("name"), dict):
            n = user["name"]
            name = PersonName(given=_str(n.get("given_name")), family=_str(n.get("family_name")))

        address = None
        if isinstance(user.get("address"), dict):
            a = user["address"]
            address = PostalAddress(
                street=_str(a.get("street")),
                street2=_str(a.get("street2")),
                city=_str(a.get("city")),
                region=_str(a.get("region")),
                postal_code=_str(a.get("postal_code")),
                country=_str(a.get("country")),
            )

        return cls(
            client_user_id=_str(payload.get("client_user_id")),
            created_at=_str(payload.get("created_at")),
            name=name,
            address=address,
            date_of_birth=_str(user.get("date_of_birth")),
            id_number=_str(_dict(user.get("id_number")).get("value")),
            raw=payload,
        )


@dataclass(frozen=True)
class ReviewTask:
    category: str
    key: str
    status: str
    full_addresses: Tuple[Optional[str], ...] = ()


@dataclass(frozen=True)
class BusinessRecord:
    id: str
    name: str
    created_at: str
    status: str
    external_id: Optional[str] = None
    tin: Optional[str] = None
    tasks: Tuple[ReviewTask, ...] = ()
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "BusinessRecord":
        tasks = []
        for t in _dict(payload.get("review")).get("tasks") or []:
            if not isinstance(t, dict):
                continue
            addresses = tuple(
                _dict(_dict(src).get("metadata")).get("full_address")
                for src in (t.get("sources") or [])
            )
            tasks.append(
                ReviewTask(
                    category=_str(t.get("category")),
                    key=_str(t.get("key")),
                    status=_str(t.get("status")),
                    full_addresses=addresses,
                )
            )

        return cls(
            id=_str(payload.get("id")),
            name=_str(payload.get("name")),
            created_at=_str(payload.get("created_at")),
            status=_str(payload.get("status")),
            external_id=_str(payload.get("external_id")) or None,
            tin=_str(_dict(payload.get("tin")).get("tin")) or None,
            tasks=tuple(tasks),
            raw=payload,
        )

    def physical_address(self) -> str:
        """Address from the first successful address_verification task, else N/A."""
        for task in self.tasks:
            if task.category == "address" and task.key == "address_verification" and task.status == "success":
                if task.full_addresses and task.full_addresses[0]:
                    return task.full_addresses[0]
                return "N/A"
        return "N/A"


@dataclass(frozen=True)
class ReconciledPair:
    result: VerificationResult
    business: Optional[BusinessRecord]


# ---------------------------------------------------------------------------
# String distance
# ---------------------------------------------------------------------------

def levenshtein_distance(a: Optional[str], b: Optional[str]) -> int:
    a = a or ""
    b = b or ""
    if not a:
        return len(b)
    if not b:
        return len(a)

    table = [[0] * (len(b) + 1) for _ in range(len(a) + 1)]
    for i in range(len(a) + 1):
        table[i][0] = i
    for j in range(len(b) + 1):
        table[0][j] = j

    for i in range(1, len(a) + 1):
        for j in range(1, len(b) + 1):
            cost = 0 if a[i - 1] == b[j - 1] else 1
            table[i][j] = min(
                table[i - 1][j] + 1,         # deletion
                table[i][j - 1] + 1,         # insertion
                table[i - 1][j - 1] + cost,  # substitution
            )
    return table[len(a)][len(b)]


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------

def redact_scalar(value: Optional[str], reveal: bool) -> Optional[str]:
    if reveal or not value:
        return value
    if _MASKED_RE.match(value):
        return value
    digits = re.sub(r"\D", "", value)
    if len(digits) == 9:
        return f"XXX-XX-{digits[-4:]}"
    if len(value) > 4:
        return f"XXXX{value[-4:]}"
    return "REDACTED"


def _is_sensitive_key(key: str) -> bool:
    k = key.lower()
    return any(part in k for part in SENSITIVE_KEY_PARTS)


def redact_tree(value: Any, reveal: bool) -> Any:
    """
    Deep copy of a JSON-like tree with sensitive fields masked. Keys are matched
    by substring (see SENSITIVE_KEY_PARTS). A sensitive key holding an object
    with a "value" field has that field masked. The input is never mutated.
    """
    if isinstance(value, list):
        return [redact_tree(v, reveal) for v in value]
    if not isinstance(value, dict):
        return value

    out: Dict[str, Any] = {}
    for k, v in value.items():
        copied = redact_tree(v, reveal)
        if not reveal and isinstance(k, str) and _is_sensitive_key(k):
            if isinstance(copied, str):
                copied = redact_scalar(copied, reveal)
            elif isinstance(copied, dict) and isinstance(copied.get("value"), str):
                copied["value"] = redact_scalar(copied["value"], reveal)
        out[k] = copied
    return out


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

def match_business(
    reference: str,
    businesses: Sequence[BusinessRecord],
    max_distance: int = DEFAULT_MAX_DISTANCE,
    tie_break: str = DEFAULT_TIE_BREAK,
) -> Optional[BusinessRecord]:
    """
    Find the business a free-text customer reference belongs to.

    1. First business whose external_id occurs inside the reference.
    2. Otherwise the business whose name is closest by edit distance, if that
       distance is <= max_distance. Ties go to the earliest business, or the
       latest with tie_break="last". Nameless businesses are skipped.
    """
    if tie_break not in TIE_BREAKS:
        raise ValueError(f"tie_break must be one of: {', '.join(TIE_BREAKS)}")
    reference = reference or ""

    for b in businesses:
        if b.external_id and b.external_id in reference:
            return b

    best: Optional[BusinessRecord] = None
    best_distance = None
    for b in businesses:
        if not b.name:
            continue
        d = levenshtein_distance(reference, b.name)
        if best_distance is None or d < best_distance or (tie_break == "last" and d == best_distance):
            best = b
            best_distance = d

    if best is not None and best_distance is not None and best_distance <= max_distance:
        return best
    return None


def reconcile(
    results: Sequence[VerificationResult],
    businesses: Sequence[BusinessRecord],
    max_distance: int = DEFAULT_MAX_DISTANCE,
    tie_break: str = DEFAULT_TIE_BREAK,
) -> List[ReconciledPair]:
    # A business is claimed by the first result that matches it.
    pool = list(businesses)
    pairs: List[ReconciledPair] = []
    for r in results:
        b = match_business(r.client_user_id, pool, max_distance=max_distance, tie_break=tie_break)
        if b is not None:
            pool = [x for x in pool if x is not b]
        pairs.append(ReconciledPair(result=r, business=b))
    return pairs


# ---------------------------------------------------------------------------
# Row projection
# ---------------------------------------------------------------------------

def ofac_columns(columns: Sequence[str]) -> List[str]:
    """Insert first_name/last_name right after "hits" (at the front if absent)."""
    cols = list(columns)
    at = cols.index("hits") + 1 if "hits" in cols else 0
    return cols[:at] + ["first_name", "last_name"] + cols[at:]


def build_ofac_rows(
    ledger_rows: Sequence[Dict[str, str]],
    results: Sequence[VerificationResult],
) -> List[Dict[str, str]]:
    # Exact lookup only; OFAC rows never use the fuzzy fallback.
    by_ref = {r.client_user_id: r for r in results}
    out = []
    for row in ledger_rows:
        r = by_ref.get(row.get("customer_reference", ""))
        augmented = dict(row)
        if r is not None and r.name is not None:
            augmented["first_name"] = r.name.given
            augmented["last_name"] = r.name.family
        else:
            augmented["first_name"] = ""
            augmented["last_name"] = ""
        out.append(augmented)
    return out


def cip_row(
    number: int,
    pair: ReconciledPair,
    period_label: str,
    reveal: bool,
) -> Dict[str, str]:
    r = pair.result
    b = pair.business

    ein = ""
    if b is not None:
        ein = redact_scalar(b.tin, reveal) if b.tin else "MISSING"

    return {
        "#": str(number),
        "Business Name": b.name if b else "",
        "Business Physical Address": b.physical_address() if b else "N/A",
        "EIN": ein,
        "First Name": r.name.given if r.name else "",
        "Last Name": r.name.family if r.name else "",
        "Physical Address": r.address.one_line() if r.address else "",
        "DOB": r.date_of_birth,
        "SSN": redact_scalar(r.id_number, reveal) or "",
        "Beneficial Owner": "",
        "Controlling Party": "",
        "Onboard Date": period_label,
        "created_at": b.created_at if b else "",
        "status": b.status if b else "",
    }


def build_cip_rows(
    results: Sequence[VerificationResult],
    businesses: Sequence[BusinessRecord],
    period_label: str,
    reveal: bool = False,
    max_distance: int = DEFAULT_MAX_DISTANCE,
    tie_break: str = DEFAULT_TIE_BREAK,
) -> List[Dict[str, str]]:
    pairs = reconcile(results, businesses, max_distance=max_distance, tie_break=tie_break)
    return [cip_row(i, pair, period_label, reveal) for i, pair in enumerate(pairs, start=1)]


def build_business_rows(businesses: Sequence[BusinessRecord], reveal: bool = False) -> List[Dict[str, str]]:
    rows = []
    for b in businesses:
        created = _parse_timestamp(b.created_at)
        rows.append({
            "#": b.id,
            "Business Name": b.name,
            "Business Physical Address": b.physical_address(),
            "EIN": redact_scalar(b.tin, reveal) if b.tin else "MISSING",
            "Onboard Date": format_period_label(created) if created else "",
            "created_at": b.created_at,
            "status": b.status,
        })
    return rows


# ---------------------------------------------------------------------------
# Tabular output
# ---------------------------------------------------------------------------

def format_period_label(value: Any) -> str:
    """'2025-03-31' / date / datetime -> 'Q1 2025'."""
    if isinstance(value, (dt.date, dt.datetime)):
        d = value
    else:
        d = dt.date.fromisoformat(str(value).strip()[:10])
    return f"Q{1 + (d.month - 1) // 3} {d.year}"


def write_csv(rows: Iterable[Dict[str, Any]], columns: Sequence[str], path: Path) -> Path:
    # Cells are not quoted; values are assumed to be free of commas.
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = [",".join(columns)]
    for row in rows:
        lines.append(",".join(_str(row.get(c)) for c in columns))
    path.write_text("\n".join(lines), encoding="utf-8")
    return path


def json_path(output_dir: Path, prefix: str, period_label: str) -> Path:
    return Path(output_dir) / f"{prefix}-{period_label}.json"


def write_json(records: Sequence[Any], output_dir: Path, prefix: str, period_label: str) -> Path:
    path = json_path(output_dir, prefix, period_label)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(list(records), indent=2, ensure_ascii=False), encoding="utf-8")
    return path


def load_json(path: Path) -> List[Dict[str, Any]]:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, list):
        raise ValueError(f"Expected a JSON array in {path}")
    return data


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

def read_ledger(path: Path) -> Tuple[List[str], List[Dict[str, str]]]:
    """Returns (columns, rows). Every cell is kept as text."""
    df = pd.read_csv(path, dtype=str, keep_default_na=False, skip_blank_lines=True)
    columns = [str(c) for c in df.columns]
    if "customer_reference" not in columns:
        raise ValueError(f"Ledger {path} has no 'customer_reference' column")
    rows = [{c: row[c] for c in columns} for row in df.to_dict(orient="records")]
    return columns, rows


def customer_references(rows: Iterable[Dict[str, str]]) -> List[str]:
    seen: Dict[str, None] = {}
    for row in rows:
        ref = row.get("customer_reference", "")
        if ref and ref not in seen:
            seen[ref] = None
    return list(seen)


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class PlaidClient:
    def __init__(self, config: ReportConfig):
        self.config = config

    def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        response = requests.post(
            f"{self.config.plaid_base_url}{path}",
            json=body,
            timeout=self.config.timeout,
            headers={
                "PLAID-CLIENT-ID": self.config.plaid_client_id,
                "PLAID-SECRET": self.config.plaid_secret,
                "Content-Type": "application/json",
                "User-Agent": self.config.user_agent,
            },
        )
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ProviderError(f"Unexpected Plaid response for {path}")
        return data

    def list_verifications(self, customer_reference: str) -> List[VerificationResult]:
        results: List[VerificationResult] = []
        cursor = None
        while True:
            body: Dict[str, Any] = {
                "template_id": self.config.template_id,
                "client_user_id": customer_reference,
            }
            if cursor:
                body["cursor"] = cursor
            data = self._post("/identity_verification/list", body)
            for item in data.get("identity_verifications") or []:
                if isinstance(item, dict):
                    results.append(VerificationResult.from_api(item))
            cursor = data.get("next_cursor")
            if not cursor:
                return results
            time.sleep(self.config.request_delay)


class MiddeskClient:
    def __init__(self, config: ReportConfig):
        self.config = config

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        response = requests.get(
            f"{self.config.middesk_base_url}{path}",
            params=params,
            timeout=self.config.timeout,
            headers={
                "Authorization": f"Bearer {self.config.middesk_api_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": self.config.user_agent,
            },
        )
        response.raise_for_status()
        return response.json()

    def list_businesses(self, start: dt.date, end: dt.date) -> List[BusinessRecord]:
        businesses: List[BusinessRecord] = []
        page = 1
        while True:
            print(f"Fetching business page {page}...", file=sys.stderr)
            data = self._get("/businesses", params={
                "page": page,
                "per_page": MIDDESK_PAGE_SIZE,
                "start_date": start.strftime("%Y-%m-%d"),
                "end_date": end.strftime("%Y-%m-%d"),
            })
            if not isinstance(data, dict) or not isinstance(data.get("data"), list):
                raise ProviderError(f"Malformed business listing on page {page}")
            businesses.extend(BusinessRecord.from_api(b) for b in data["data"] if isinstance(b, dict))
            time.sleep(self.config.request_delay)
            if not data.get("has_more"):
                return businesses
            page += 1

    def get_business_details(self, business_id: str) -> BusinessRecord:
        data = self._get(f"/businesses/{business_id}")
        if not isinstance(data, dict):
            raise ProviderError(f"Malformed business details for {business_id}")
        return BusinessRecord.from_api(data)

    def fetch_business_details(self, businesses: Sequence[BusinessRecord]) -> List[BusinessRecord]:
        """
        Details for every listed business, in listing order. At most
        config.max_workers requests are in flight; any failure fails the batch.
        """
        def fetch(b: BusinessRecord) -> BusinessRecord:
            details = self.get_business_details(b.id)
            time.sleep(self.config.request_delay)
            return details

        pool = ThreadPoolExecutor(max_workers=max(1, self.config.max_workers))
        try:
            details = list(tqdm(
                pool.map(fetch, businesses),
                total=len(businesses),
                desc="Business details",
                unit="business",
                leave=False,
            ))
        except Exception:
            # Drop queued requests; only those already in flight run to completion.
            pool.shutdown(wait=False, cancel_futures=True)
            raise
        pool.shutdown()
        return details


# ---------------------------------------------------------------------------
# Exporters
# ---------------------------------------------------------------------------

def period_bounds(start: dt.date, end: dt.date, time_zone: str) -> Tuple[dt.datetime, dt.datetime]:
    tz = pytz.timezone(time_zone)
    lo = tz.localize(dt.datetime.combine(start, dt.time(0, 0, 0)))
    hi = tz.localize(dt.datetime.combine(end, dt.time(23, 59, 59)))
    return lo, hi


def previous_quarter(today: dt.date) -> Tuple[dt.date, dt.date]:
    """Start/end dates of the last calendar quarter completed before `today`."""
    first_month = 3 * ((today.month - 1) // 3) + 1
    this_quarter_start = dt.date(today.year, first_month, 1)
    end = this_quarter_start - dt.timedelta(days=1)
    start = dt.date(end.year, end.month - 2, 1)
    return start, end


def latest_per_customer(results: Iterable[VerificationResult]) -> List[VerificationResult]:
    floor = dt.datetime.min.replace(tzinfo=dt.timezone.utc)
    latest: Dict[str, VerificationResult] = {}
    for r in results:
        current = latest.get(r.client_user_id)
        if current is None or (_parse_timestamp(r.created_at) or floor) > (_parse_timestamp(current.created_at) or floor):
            latest[r.client_user_id] = r
    return list(latest.values())


def export_verification_results(
    client: PlaidClient,
    customer_refs: Sequence[str],
    start: dt.datetime,
    end: dt.datetime,
    delay: float = DEFAULT_REQUEST_DELAY,
) -> List[VerificationResult]:
    fetched: List[VerificationResult] = []
    for i, ref in enumerate(tqdm(customer_refs, desc="Verifications", unit="customer", leave=False)):
        if i:
            time.sleep(delay)
        try:
            fetched.extend(client.list_verifications(ref))
        except (requests.RequestException, ProviderError, ValueError) as e:
            print(f"WARNING: Failed to fetch verifications for {ref}: {e}", file=sys.stderr)
    print(f"Fetched {len(fetched)} total verification results", file=sys.stderr)

    in_range = []
    for r in fetched:
        ts = _parse_timestamp(r.created_at)
        if ts is not None and start <= ts <= end:
            in_range.append(r)
    print(f"Filtered to {len(in_range)} results within date range", file=sys.stderr)

    latest = latest_per_customer(in_range)
    print(f"Found {len(latest)} unique customers with latest results", file=sys.stderr)
    return latest


def export_businesses(client: MiddeskClient, start: dt.date, end: dt.date) -> List[BusinessRecord]:
    listed = client.list_businesses(start, end)
    print(f"Found {len(listed)} businesses in the specified date range", file=sys.stderr)
    if not listed:
        return []
    return client.fetch_business_details(listed)


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

def run_report(
    ledger_path: Path,
    *,
    output_dir: Path,
    start: dt.date,
    end: dt.date,
    config: Optional[ReportConfig],
    show_sensitive: bool = False,
    write_json_dumps: bool = False,
    write_business_csv: bool = False,
    offline: bool = False,
    max_distance: int = DEFAULT_MAX_DISTANCE,
    tie_break: str = DEFAULT_TIE_BREAK,
) -> Dict[str, Path]:
    """
    Runs the whole export and returns the written artifacts by name. With
    offline=True the provider results come from earlier JSON dumps in
    output_dir and config may be None.
    """
    label = format_period_label(end)
    written: Dict[str, Path] = {}

    print(f"Date range: {start.isoformat()} to {end.isoformat()} ({label})", file=sys.stderr)
    print(f"Sensitive data will be {'visible' if show_sensitive else 'redacted'}", file=sys.stderr)

    columns, ledger_rows = read_ledger(ledger_path)
    refs = customer_references(ledger_rows)
    print(f"Found {len(ledger_rows)} ledger rows, {len(refs)} unique customer references", file=sys.stderr)

    if offline:
        results = [VerificationResult.from_api(p) for p in load_json(json_path(output_dir, PLAID_RESULTS_PREFIX, label))]
    else:
        lo, hi = period_bounds(start, end, config.time_zone)
        results = export_verification_results(PlaidClient(config), refs, lo, hi, delay=config.request_delay)
        if write_json_dumps:
            written["verifications_json"] = write_json(
                [redact_tree(r.raw, show_sensitive) for r in results], output_dir, PLAID_RESULTS_PREFIX, label
            )

    written["ofac_csv"] = write_csv(
        build_ofac_rows(ledger_rows, results),
        ofac_columns(columns),
        Path(output_dir) / f"OFAC Results - {label}.csv",
    )

    cip_path = Path(output_dir) / f"CIP Results - {label}.csv"
    if not offline:
        # Person-only CIP first so a failed business export still leaves a CIP file.
        write_csv(build_cip_rows(results, [], label, show_sensitive, max_distance, tie_break), CIP_COLUMNS, cip_path)
        businesses = export_businesses(MiddeskClient(config), start, end)
        if write_json_dumps:
            written["businesses_json"] = write_json(
                [redact_tree(b.raw, show_sensitive) for b in businesses], output_dir, MIDDESK_RESULTS_PREFIX, label
            )
    else:
        businesses = [BusinessRecord.from_api(p) for p in load_json(json_path(output_dir, MIDDESK_RESULTS_PREFIX, label))]

    written["cip_csv"] = write_csv(
        build_cip_rows(results, businesses, label, show_sensitive, max_distance, tie_break), CIP_COLUMNS, cip_path
    )

    if write_business_csv:
        written["business_csv"] = write_csv(
            build_business_rows(businesses, show_sensitive),
            BUSINESS_COLUMNS,
            Path(output_dir) / f"Business Results - {label}.csv",
        )

    for name, path in written.items():
        print(f"Wrote {name}: {path}", file=sys.stderr)
    return written


def _parse_date(value: str) -> dt.date:
    try:
        return dt.date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date (expected YYYY-MM-DD): {value}")


def main(argv: List[str]) -> int:
    p = argparse.ArgumentParser(
        prog="compliance-report",
        description="Build quarterly OFAC and CIP exports from Plaid and Middesk verification data",
    )
    p.add_argument("ledger", help="Customer ledger CSV (needs a customer_reference column)")
    p.add_argument("--show-sensitive", action="store_true", help="Do not redact TIN/SSN values")
    p.add_argument("--write-json", action="store_true", help="Also dump raw provider results as JSON")
    p.add_argument("--write-business-csv", action="store_true", help="Also write a per-business summary CSV")
    p.add_argument("--offline", action="store_true", help="Rebuild CSVs from earlier JSON dumps, no API calls")
    p.add_argument("--start-date", type=_parse_date, default=None)
    p.add_argument("--end-date", type=_parse_date, default=None)
    p.add_argument("--output-dir", default=str(DEFAULT_OUTPUT_DIR))
    p.add_argument("--max-distance", type=int, default=DEFAULT_MAX_DISTANCE,
                   help="Largest edit distance accepted when matching a reference to a business name")
    p.add_argument("--tie-break", choices=TIE_BREAKS, default=DEFAULT_TIE_BREAK,
                   help="Which equally close business name wins: the first or last one listed")
    p.add_argument("--request-delay", type=float, default=DEFAULT_REQUEST_DELAY)
    p.add_argument("--max-workers", type=int, default=DEFAULT_MAX_WORKERS)
    p.add_argument("--timeout", type=int, default=DEFAULT_REQUEST_TIMEOUT)

    args = p.parse_args(argv)

    config = None
    if not args.offline:
        try:
            config = load_config(
                os.environ,
                timeout=args.timeout,
                request_delay=args.request_delay,
                max_workers=args.max_workers,
            )
        except ConfigurationError as e:
            print(f"ERROR config: {e}", file=sys.stderr)
            return 1

    time_zone = config.time_zone if config else (os.environ.get("REPORT_TIME_ZONE") or DEFAULT_TIME_ZONE)
    default_start, default_end = previous_quarter(dt.datetime.now(pytz.timezone(time_zone)).date())
    start = args.start_date or default_start
    end = args.end_date or default_end
    if start > end:
        print(f"ERROR dates: start date {start} is after end date {end}", file=sys.stderr)
        return 1

    try:
        run_report(
            Path(args.ledger),
            output_dir=Path(args.output_dir),
            start=start,
            end=end,
            config=config,
            show_sensitive=args.show_sensitive,
            write_json_dumps=args.write_json,
            write_business_csv=args.write_business_csv,
            offline=args.offline,
            max_distance=args.max_distance,
            tie_break=args.tie_break,
        )
    except Exception as e:
        print(f"ERROR report: {e}", file=sys.stderr)
        return 1

    print("All exports completed successfully", file=sys.stderr)
    return 0


def cli() -> None:
    raise SystemExit(main(sys.argv[1:]))


if __name__ == "__main__":
    cli()
