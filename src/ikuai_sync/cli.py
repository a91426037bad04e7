#!/usr/bin/env python3
"""ikuai-sync - Scheduled list synchronization for iKuai routers

Pulls address and domain lists from remote URLs and pushes the deduplicated
result into an iKuai router, replacing whatever the target currently holds.
Three kinds of remote configuration are kept in sync:

    - custom ISP:     the router's custom ISP table (IPv4 / CIDR lists)
    - IP group:       named IP groups (IPv4 / CIDR lists)
    - stream domain:  domain based stream routing rules bound to interfaces

Environment variables:

    Router:
        IKUAI_ADDR                 Router base URL (default: http://192.168.1.1)
        IKUAI_USERNAME             Login user (default: admin)
        IKUAI_PASSWORD             Login password (default: admin)

    HTTP:
        HTTP_TIMEOUT               Per-request timeout, e.g. "30s", "500ms", "1m30s"
                                   or bare seconds (default: 30s)
        HTTP_INSECURE_SKIP_VERIFY  Disable TLS certificate checks (default: false)

    Scheduling:
        TZ                         Timezone used for cron schedules
                                   (default: Asia/Shanghai)
        IKUAI_CRON_SKIP_START      Do not run every job once at startup
                                   (default: false)
        SYNC_MODE                  "watch" (run the scheduler) or "once"
                                   (run every job a single time and exit)
                                   (default: watch)

    Jobs:
        IKUAI_CRON_CUSTOM_ISP_<n>     cron|name|url1,url2,...|comment
        IKUAI_CRON_IP_GROUP_<n>       cron|name|url1,url2,...|comment
        IKUAI_CRON_STREAM_DOMAIN_<n>  cron|iface1,iface2,...|url1,url2,...|src_addr|comment

                                   Trailing fields are optional. Entries with
                                   fewer than three fields, no name or no URL
                                   are ignored.

        IKUAI_JOBS_PATH            YAML file, or directory of *.yaml files, with
                                   additional jobs (default: /config/jobs.yaml)
                                   Example:
                                     ip_group:
                                       - cron: "0 4 * * *"
                                         name: "cn"
                                         urls:
                                           - "https://example.com/cn.txt"
                                     stream_domain:
                                       - "0 5 * * *|wan2|https://example.com/gfw.txt"

    Runtime:
        LOG_LEVEL                  DEBUG, INFO, WARNING, ERROR (default: INFO)

Known limitation: a run deletes and then re-adds its target. Two jobs that
target the same remote name can run at the same time, interleave and leave
the router briefly inconsistent; nothing serializes them.
"""

from __future__ import annotations

import base64
import hashlib
import ipaddress
import json
import logging
import os
import re
import sys
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import (
    Any,
    Callable,
    ClassVar,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    Tuple,
)
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import requests
import yaml
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

# =============================================================================
# Logging Setup
# =============================================================================

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

DEFAULT_IKUAI_ADDR = "http://192.168.1.1"
DEFAULT_IKUAI_USERNAME = "admin"
DEFAULT_IKUAI_PASSWORD = "admin"
DEFAULT_HTTP_TIMEOUT = "30s"
DEFAULT_TIMEZONE = "Asia/Shanghai"
DEFAULT_JOBS_PATH = "/config/jobs.yaml"

# Attached to created entries when a job has no comment of its own.
DEFAULT_COMMENT = "ikuai-sync"

# Upper bound of entries per add request.
CHUNK_SIZE = 5000

CUSTOM_ISP_KEY_RE = re.compile(r"IKUAI_CRON_CUSTOM_ISP_(\d+)")
IP_GROUP_KEY_RE = re.compile(r"IKUAI_CRON_IP_GROUP_(\d+)")
STREAM_DOMAIN_KEY_RE = re.compile(r"IKUAI_CRON_STREAM_DOMAIN_(\d+)")

MIN_JOB_FIELDS = 3

# =============================================================================
# Errors
# =============================================================================


class ConfigError(ValueError):
    """Raised for an invalid global setting (timeout, timezone, mode)."""


class FetchError(Exception):
    """Raised when a source list cannot be downloaded."""


class IKuaiError(Exception):
    """Base class for errors reported by the router."""


class IKuaiAuthError(IKuaiError):
    """Login was rejected or could not be performed."""


class IKuaiAPIError(IKuaiError):
    """A call returned a result code other than success."""

    def __init__(self, message: str, result: Optional[int] = None):
        super().__init__(message)
        self.result = result


class SyncError(Exception):
    """A job run failed; carries the job tag and the phase it failed in."""

    def __init__(self, tag: str, phase: str, cause: Exception):
        super().__init__(f"{tag}: {phase} failed: {cause}")
        self.tag = tag
        self.phase = phase
        self.cause = cause


# =============================================================================
# Enums
# =============================================================================


class ResourceKind(Enum):
    """Remote configuration categories. The value is the iKuai func_name."""

    CUSTOM_ISP = "custom_isp"
    IP_GROUP = "ipgroup"
    STREAM_DOMAIN = "stream_domain"

    @property
    def label(self) -> str:
        return self.name.lower()


# Key holding the name of an entry in `show` responses.
NAME_KEYS: Dict[ResourceKind, str] = {
    ResourceKind.CUSTOM_ISP: "name",
    ResourceKind.IP_GROUP: "group_name",
    ResourceKind.STREAM_DOMAIN: "interface",
}

# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class JobDefinition:
    """One configured synchronization task."""

    schedule: str
    name: str
    urls: Tuple[str, ...]
    comment: str = ""

    kind: ClassVar[ResourceKind] = ResourceKind.IP_GROUP

    @property
    def tag(self) -> str:
        return f"{self.kind.label}[{self.name}]"

    @property
    def effective_comment(self) -> str:
        return self.comment or DEFAULT_COMMENT


@dataclass(frozen=True)
class CustomISPJob(JobDefinition):
    kind: ClassVar[ResourceKind] = ResourceKind.CUSTOM_ISP


@dataclass(frozen=True)
class IPGroupJob(JobDefinition):
    kind: ClassVar[ResourceKind] = ResourceKind.IP_GROUP


@dataclass(frozen=True)
class StreamDomainJob(JobDefinition):
    """Stream domain job. `name` is the comma-joined interface list."""

    interfaces: Tuple[str, ...] = ()
    src_addr: str = ""

    kind: ClassVar[ResourceKind] = ResourceKind.STREAM_DOMAIN


@dataclass
class JobSet:
    custom_isp: List[CustomISPJob] = field(default_factory=list)
    ip_group: List[IPGroupJob] = field(default_factory=list)
    stream_domain: List[StreamDomainJob] = field(default_factory=list)

    def all(self) -> List[JobDefinition]:
        return [*self.custom_isp, *self.ip_group, *self.stream_domain]

    def extend(self, other: "JobSet") -> None:
        self.custom_isp.extend(other.custom_isp)
        self.ip_group.extend(other.ip_group)
        self.stream_domain.extend(other.stream_domain)

    def __len__(self) -> int:
        return len(self.custom_isp) + len(self.ip_group) + len(self.stream_domain)


@dataclass(frozen=True)
class RemoteEntry:
    """A row currently stored on the router."""

    id: int
    name: str
    comment: str = ""
    fields: Dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass
class SyncResult:
    """Outcome of one job run."""

    tag: str
    fetched: int = 0
    unique: int = 0
    deleted: int = 0
    chunks: int = 0
    duration: float = 0.0
    skipped: bool = False


# =============================================================================
# Utility Functions
# =============================================================================


def _parse_bool(value: Any, *, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


_DURATION_RE = re.compile(r"^(?:\d+(?:\.\d+)?(?:ms|s|m|h))+$")
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def _parse_duration(value: str) -> float:
    """Parse "500ms", "30s", "1m30s", "1.5h" or bare seconds into seconds."""
    text = value.strip().lower()
    if re.fullmatch(r"\d+(?:\.\d+)?", text):
        seconds = float(text)
    elif _DURATION_RE.match(text):
        seconds = sum(
            float(amount) * _DURATION_UNITS[unit]
            for amount, unit in _DURATION_PART_RE.findall(text)
        )
    else:
        raise ConfigError(f"invalid duration: '{value}'")
    if seconds <= 0:
        raise ConfigError(f"duration must be positive: '{value}'")
    return seconds


def _split_list(value: Any) -> Tuple[str, ...]:
    """Split a comma separated string (or YAML list) into stripped items."""
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        items = [str(v) for v in value]
    else:
        items = str(value).split(",")
    return tuple(item.strip() for item in items if item and item.strip())


def find_config_files(config_path: str) -> List[str]:
    """Find all .yaml job files in a directory, or return the single file.

    Args:
        config_path: Path to a job file or a directory of job files

    Returns:
        List of job file paths (excluding .template files)
    """
    path = Path(config_path)

    if path.is_file():
        return [str(path)]

    if path.is_dir():
        yaml_files = sorted(path.glob("*.yaml"))
        return [str(f) for f in yaml_files if not f.name.endswith(".template")]

    return []


# =============================================================================
# Job Parsing
# =============================================================================


def _build_named_job(cls, fields: Sequence[str]) -> Optional[JobDefinition]:
    """Build a custom ISP / IP group job from cron|name|urls|comment fields."""
    if len(fields) < MIN_JOB_FIELDS:
        return None
    schedule = fields[0].strip()
    name = fields[1].strip()
    urls = _split_list(fields[2])
    comment = fields[3].strip() if len(fields) > 3 else ""
    if not name or not urls:
        return None
    return cls(schedule=schedule, name=name, urls=urls, comment=comment)


def _build_stream_domain_job(fields: Sequence[str]) -> Optional[StreamDomainJob]:
    """Build a stream domain job from cron|ifaces|urls|src_addr|comment fields."""
    if len(fields) < MIN_JOB_FIELDS:
        return None
    schedule = fields[0].strip()
    interfaces = _split_list(fields[1])
    urls = _split_list(fields[2])
    src_addr = fields[3].strip() if len(fields) > 3 else ""
    comment = fields[4].strip() if len(fields) > 4 else ""
    if not interfaces or not urls:
        return None
    return StreamDomainJob(
        schedule=schedule,
        name=",".join(interfaces),
        urls=urls,
        comment=comment,
        interfaces=interfaces,
        src_addr=src_addr,
    )


def _scan_indexed(environ: Mapping[str, str], pattern: re.Pattern) -> Dict[str, List[str]]:
    """Collect pipe-split values of keys like PREFIX_<n>, first index wins."""
    found: Dict[str, List[str]] = {}
    for key in sorted(environ):
        match = pattern.fullmatch(key)
        if not match:
            continue
        index = match.group(1)
        if index in found:
            logger.debug(f"Ignoring {key}: job index {index} already defined")
            continue
        found[index] = environ[key].split("|")
    return found


def parse_jobs(environ: Mapping[str, str]) -> JobSet:
    """Parse IKUAI_CRON_* job definitions from environment-style pairs.

    Malformed entries are dropped, never raised, so one bad job cannot keep
    the others from loading.
    """
    jobs = JobSet()

    for index, fields in _scan_indexed(environ, CUSTOM_ISP_KEY_RE).items():
        job = _build_named_job(CustomISPJob, fields)
        if job is None:
            logger.debug(f"Skipping malformed IKUAI_CRON_CUSTOM_ISP_{index}")
            continue
        jobs.custom_isp.append(job)

    for index, fields in _scan_indexed(environ, IP_GROUP_KEY_RE).items():
        job = _build_named_job(IPGroupJob, fields)
        if job is None:
            logger.debug(f"Skipping malformed IKUAI_CRON_IP_GROUP_{index}")
            continue
        jobs.ip_group.append(job)

    for index, fields in _scan_indexed(environ, STREAM_DOMAIN_KEY_RE).items():
        job = _build_stream_domain_job(fields)
        if job is None:
            logger.debug(f"Skipping malformed IKUAI_CRON_STREAM_DOMAIN_{index}")
            continue
        jobs.stream_domain.append(job)

    return jobs


def _job_fields_from_item(item: Any, stream_domain: bool) -> Optional[List[str]]:
    """Turn a YAML job item (pipe string or mapping) into positional fields."""
    if isinstance(item, str):
        return item.split("|")
    if not isinstance(item, dict):
        return None
    cron = str(item.get("cron") or "")
    urls = ",".join(_split_list(item.get("urls") or item.get("url")))
    comment = str(item.get("comment") or "")
    if stream_domain:
        interfaces = ",".join(_split_list(item.get("interfaces") or item.get("interface")))
        src_addr = str(item.get("src_addr") or "")
        return [cron, interfaces, urls, src_addr, comment]
    return [cron, str(item.get("name") or ""), urls, comment]


def load_job_files(config_path: str) -> JobSet:
    """Load extra jobs from YAML file(s). Broken files are logged and skipped."""
    jobs = JobSet()
    if not config_path:
        return jobs

    for config_file in find_config_files(config_path):
        try:
            with open(config_file, "r") as f:
                config_data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load jobs from {config_file}: {e}")
            continue

        if not isinstance(config_data, dict):
            logger.warning(f"Job file {config_file} has no job lists")
            continue

        for key, target in (
            ("custom_isp", jobs.custom_isp),
            ("ip_group", jobs.ip_group),
            ("stream_domain", jobs.stream_domain),
        ):
            items = config_data.get(key) or []
            if not isinstance(items, list):
                logger.warning(f"Job file {config_file}: '{key}' must be a list")
                continue
            for position, item in enumerate(items):
                fields = _job_fields_from_item(item, stream_domain=key == "stream_domain")
                job = None
                if fields is not None:
                    if key == "stream_domain":
                        job = _build_stream_domain_job(fields)
                    elif key == "custom_isp":
                        job = _build_named_job(CustomISPJob, fields)
                    else:
                        job = _build_named_job(IPGroupJob, fields)
                if job is None:
                    logger.warning(f"Job file {config_file}: skipping invalid {key}[{position}]")
                    continue
                target.append(job)

    if jobs:
        logger.info(f"Loaded {len(jobs)} job(s) from {config_path}")
    return jobs


# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True)
class Config:
    """Runtime configuration, built once at startup."""

    ikuai_addr: str = DEFAULT_IKUAI_ADDR
    ikuai_username: str = DEFAULT_IKUAI_USERNAME
    ikuai_password: str = DEFAULT_IKUAI_PASSWORD
    http_timeout: float = 30.0
    http_insecure_skip_verify: bool = False
    timezone: str = DEFAULT_TIMEZONE
    cron_skip_start: bool = False
    sync_mode: str = "watch"
    jobs_path: str = DEFAULT_JOBS_PATH
    jobs: JobSet = field(default_factory=JobSet)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Config":
        env = os.environ if environ is None else environ

        http_timeout = _parse_duration(env.get("HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT))

        timezone = env.get("TZ", DEFAULT_TIMEZONE).strip() or DEFAULT_TIMEZONE
        try:
            ZoneInfo(timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigError(f"unknown timezone '{timezone}'") from e

        sync_mode = env.get("SYNC_MODE", "watch").lower().strip()
        if sync_mode not in {"once", "watch"}:
            raise ConfigError(f"invalid SYNC_MODE '{sync_mode}', use 'once' or 'watch'")

        jobs = parse_jobs(env)
        jobs_path = env.get("IKUAI_JOBS_PATH", DEFAULT_JOBS_PATH).strip()
        jobs.extend(load_job_files(jobs_path))

        return cls(
            ikuai_addr=env.get("IKUAI_ADDR", DEFAULT_IKUAI_ADDR).strip(),
            ikuai_username=env.get("IKUAI_USERNAME", DEFAULT_IKUAI_USERNAME),
            ikuai_password=env.get("IKUAI_PASSWORD", DEFAULT_IKUAI_PASSWORD),
            http_timeout=http_timeout,
            http_insecure_skip_verify=_parse_bool(env.get("HTTP_INSECURE_SKIP_VERIFY")),
            timezone=timezone,
            cron_skip_start=_parse_bool(env.get("IKUAI_CRON_SKIP_START")),
            sync_mode=sync_mode,
            jobs_path=jobs_path,
            jobs=jobs,
        )


# =============================================================================
# Normalization, Dedup and Chunking
# =============================================================================

_DOMAIN_LABEL_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")


def normalize_ipv4(raw: str) -> Optional[str]:
    """Return the canonical IPv4 address or CIDR for `raw`, or None.

    Networks are returned with host bits cleared ("10.1.2.3/8" -> "10.0.0.0/8").
    IPv6, host names and empty strings are rejected.
    """
    value = (raw or "").strip()
    if not value:
        return None
    try:
        if "/" in value:
            return ipaddress.IPv4Network(value, strict=False).with_prefixlen
        return str(ipaddress.IPv4Address(value))
    except ValueError:
        return None


def normalize_domain(raw: str) -> Optional[str]:
    """Return the lowercased domain for `raw`, or None if it is not one."""
    value = (raw or "").strip().lower()
    if value.startswith("*."):
        value = value[2:]
    value = value.strip(".")
    if not value or len(value) > 253 or not value.isascii():
        return None

    labels = value.split(".")
    if len(labels) < 2:
        return None
    if not all(_DOMAIN_LABEL_RE.match(label) for label in labels):
        return None
    if labels[-1].isdigit():
        return None
    return value


def dedupe(rows: Iterable[str], normalize: Callable[[str], Optional[str]]) -> Set[str]:
    """Normalize rows and collapse duplicates; invalid rows are discarded."""
    unique: Set[str] = set()
    for row in rows:
        value = normalize(row)
        if value is not None:
            unique.add(value)
    return unique


def chunked(items: Sequence[str], size: int = CHUNK_SIZE) -> Iterator[List[str]]:
    """Yield contiguous slices of at most `size` items."""
    if size < 1:
        raise ValueError(f"chunk size must be positive, got {size}")
    for start in range(0, len(items), size):
        yield list(items[start : start + size])


# =============================================================================
# List Fetcher
# =============================================================================


class ListFetcher:
    """Downloads a remote list and returns its trimmed, non-empty lines.

    Each scheduler thread gets its own session, so concurrent jobs share no
    cookies or connections.
    """

    def __init__(self, timeout: float = 30.0, verify_tls: bool = True):
        self._timeout = timeout
        self._verify_tls = verify_tls
        self._local = threading.local()

    @property
    def _session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.verify = self._verify_tls
            session.headers["User-Agent"] = "ikuai-sync"
            self._local.session = session
        return session

    def fetch(self, url: str) -> List[str]:
        try:
            response = self._session.get(url, timeout=self._timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise FetchError(str(e)) from e

        lines = []
        for line in response.text.splitlines():
            line = line.strip()
            if line:
                lines.append(line)
        return lines


# =============================================================================
# Device Client Interface and Implementation
# =============================================================================


class DeviceClient(ABC):
    """Abstract base class for an authenticated router session."""

    @abstractmethod
    def login(self) -> None:
        """Authenticate. Raises IKuaiAuthError on failure."""
        pass

    @abstractmethod
    def show(self, kind: ResourceKind) -> List[RemoteEntry]:
        """Return every entry currently stored for `kind`."""
        pass

    @abstractmethod
    def delete(self, kind: ResourceKind, ids: Sequence[int]) -> None:
        """Delete entries by ID. An empty ID list sends nothing."""
        pass

    @abstractmethod
    def add(self, kind: ResourceKind, param: Dict[str, str]) -> None:
        """Create one entry."""
        pass


class IKuaiClient(DeviceClient):
    """iKuai router web API client."""

    LOGIN_PATH = "/Action/login"
    CALL_PATH = "/Action/call"
    LOGIN_SUCCESS = 10000
    CALL_SUCCESS = 30000

    def __init__(
        self,
        url: str,
        username: str,
        password: str,
        timeout: float = 30.0,
        verify_tls: bool = True,
    ):
        self._url = url.rstrip("/")
        self._username = username
        self._password = password
        self._timeout = timeout
        self._session = requests.Session()
        self._session.verify = verify_tls

    @property
    def name(self) -> str:
        return "iKuai"

    def login(self) -> None:
        password = self._password.encode("utf-8")
        payload = {
            "username": self._username,
            "passwd": hashlib.md5(password).hexdigest(),
            "pass": base64.b64encode(b"salt_11" + password).decode("ascii"),
            "remember_password": "",
        }
        try:
            response = self._session.post(
                f"{self._url}{self.LOGIN_PATH}", json=payload, timeout=self._timeout
            )
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, json.JSONDecodeError) as e:
            raise IKuaiAuthError(f"login to {self._url} failed: {e}") from e

        if not isinstance(data, dict) or data.get("Result") != self.LOGIN_SUCCESS:
            message = data.get("ErrMsg") if isinstance(data, dict) else None
            raise IKuaiAuthError(f"login to {self._url} rejected: {message or data}")
        logger.debug(f"Logged in to {self.name} at {self._url} as {self._username}")

    def call(self, kind: ResourceKind, action: str, param: Dict[str, str]) -> Dict[str, Any]:
        body = {"func_name": kind.value, "action": action, "param": param}
        try:
            response = self._session.post(
                f"{self._url}{self.CALL_PATH}", json=body, timeout=self._timeout
            )
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, json.JSONDecodeError) as e:
            raise IKuaiAPIError(f"{kind.value} {action} request failed: {e}") from e

        if not isinstance(data, dict):
            raise IKuaiAPIError(f"{kind.value} {action}: unexpected response {data!r}")
        result = data.get("Result")
        if result != self.CALL_SUCCESS:
            raise IKuaiAPIError(
                f"{kind.value} {action}: {data.get('ErrMsg') or 'unknown error'}", result=result
            )
        return data

    def show(self, kind: ResourceKind) -> List[RemoteEntry]:
        data = self.call(kind, "show", {"TYPE": "data"})
        payload = data.get("Data") or {}
        rows = payload.get("data") if isinstance(payload, dict) else None

        entries: List[RemoteEntry] = []
        for row in rows or []:
            if not isinstance(row, dict):
                logger.warning(f"Skipping malformed {kind.value} entry: {row}")
                continue
            try:
                entry_id = int(row.get("id"))
            except (TypeError, ValueError):
                logger.warning(f"Skipping {kind.value} entry without id: {row}")
                continue
            entries.append(
                RemoteEntry(
                    id=entry_id,
                    name=str(row.get(NAME_KEYS[kind]) or ""),
                    comment=str(row.get("comment") or ""),
                    fields=row,
                )
            )
        return entries

    def delete(self, kind: ResourceKind, ids: Sequence[int]) -> None:
        if not ids:
            return
        self.call(kind, "del", {"id": ",".join(str(i) for i in ids)})
        logger.debug(f"Deleted {len(ids)} {kind.value} entr(y/ies)")

    def add(self, kind: ResourceKind, param: Dict[str, str]) -> None:
        self.call(kind, "add", param)


# =============================================================================
# Reconciliation Helpers
# =============================================================================


def ids_matching_name(entries: Iterable[RemoteEntry], name: str) -> List[int]:
    """IDs of every entry called `name` (duplicates from earlier runs included)."""
    return [e.id for e in entries if e.name == name]


def all_ids(entries: Iterable[RemoteEntry]) -> List[int]:
    return [e.id for e in entries]


def stream_domain_ids(
    entries: Iterable[RemoteEntry], interfaces: Sequence[str], comment: str
) -> List[int]:
    """IDs of stream domain rules on `interfaces` created with `comment`."""
    wanted = set(interfaces)
    return [e.id for e in entries if e.name in wanted and e.comment == comment]


# =============================================================================
# Core Syncer
# =============================================================================


class IKuaiSyncer:
    def __init__(
        self,
        *,
        client_factory: Callable[[], DeviceClient],
        fetcher: ListFetcher,
        chunk_size: int = CHUNK_SIZE,
    ):
        self.client_factory = client_factory
        self.fetcher = fetcher
        self.chunk_size = chunk_size

    def _fetch_rows(self, job: JobDefinition) -> List[str]:
        rows: List[str] = []
        for url in job.urls:
            try:
                lines = self.fetcher.fetch(url)
            except FetchError as e:
                logger.warning(f"{job.tag}: fetch {url} failed: {e}")
                continue
            logger.info(f"{job.tag}: fetch {url} success, rows: {len(lines)}")
            rows.extend(lines)
        logger.info(f"{job.tag}: fetch total rows: {len(rows)}")
        return rows

    def _sync(
        self,
        job: JobDefinition,
        normalize: Callable[[str], Optional[str]],
        select_ids: Callable[[List[RemoteEntry]], List[int]],
        build_params: Callable[[List[str]], List[Dict[str, str]]],
    ) -> SyncResult:
        start = time.monotonic()
        result = SyncResult(tag=job.tag)

        rows = self._fetch_rows(job)
        result.fetched = len(rows)
        if not rows:
            logger.info(f"{job.tag}: nothing fetched, leaving router untouched")
            result.skipped = True
            return result

        unique = dedupe(rows, normalize)
        result.unique = len(unique)
        if not unique:
            logger.warning(
                f"{job.tag}: none of {len(rows)} fetched rows are valid, leaving router untouched"
            )
            result.skipped = True
            return result

        phase = "login"
        try:
            client = self.client_factory()
            client.login()

            phase = "show"
            ids = select_ids(client.show(job.kind))

            phase = "delete"
            if ids:
                client.delete(job.kind, ids)
                result.deleted = len(ids)
                logger.info(f"{job.tag}: deleted {len(ids)} existing entr(y/ies)")

            phase = "add"
            for chunk in chunked(sorted(unique), self.chunk_size):
                for param in build_params(chunk):
                    client.add(job.kind, param)
                result.chunks += 1
        except (IKuaiError, requests.exceptions.RequestException) as e:
            raise SyncError(job.tag, phase, e) from e

        result.duration = time.monotonic() - start
        logger.info(
            f"{job.tag}: added unique rows count: {result.unique}, "
            f"chunks: {result.chunks}, duration: {result.duration:.2f}s"
        )
        return result

    def sync_ip_group(self, job: IPGroupJob) -> SyncResult:
        comment = job.effective_comment
        return self._sync(
            job,
            normalize_ipv4,
            lambda entries: ids_matching_name(entries, job.name),
            lambda chunk: [
                {
                    "group_name": job.name,
                    "addr_pool": ",".join(chunk),
                    "comment": comment,
                    "type": "1",
                    "NewRow": "true",
                }
            ],
        )

    def sync_custom_isp(self, job: CustomISPJob) -> SyncResult:
        # The whole custom ISP table is replaced, not only rows named job.name.
        comment = job.effective_comment
        return self._sync(
            job,
            normalize_ipv4,
            all_ids,
            lambda chunk: [
                {
                    "name": job.name,
                    "ipgroup": ",".join(chunk),
                    "comment": comment,
                }
            ],
        )

    def sync_stream_domain(self, job: StreamDomainJob) -> SyncResult:
        comment = job.effective_comment
        return self._sync(
            job,
            normalize_domain,
            lambda entries: stream_domain_ids(entries, job.interfaces, comment),
            lambda chunk: [
                {
                    "interface": interface,
                    "src_addr": job.src_addr,
                    "domain": ",".join(chunk),
                    "comment": comment,
                    "week": "1234567",
                    "time": "00:00-23:59",
                    "enabled": "yes",
                }
                for interface in job.interfaces
            ],
        )

    def run_job(self, job: JobDefinition) -> SyncResult:
        if isinstance(job, CustomISPJob):
            return self.sync_custom_isp(job)
        if isinstance(job, StreamDomainJob):
            return self.sync_stream_domain(job)
        if isinstance(job, IPGroupJob):
            return self.sync_ip_group(job)
        raise TypeError(f"unsupported job type: {type(job).__name__}")

    def run_job_safely(self, job: JobDefinition) -> Optional[SyncResult]:
        """Scheduler entry point: a failed run is logged, never raised."""
        try:
            return self.run_job(job)
        except SyncError as e:
            logger.error(f"{e.tag}: sync failed during {e.phase}: {e.cause}")
            return None


# =============================================================================
# Scheduling
# =============================================================================


def create_syncer(config: Config) -> IKuaiSyncer:
    verify_tls = not config.http_insecure_skip_verify

    def client_factory() -> DeviceClient:
        return IKuaiClient(
            config.ikuai_addr,
            config.ikuai_username,
            config.ikuai_password,
            timeout=config.http_timeout,
            verify_tls=verify_tls,
        )

    return IKuaiSyncer(
        client_factory=client_factory,
        fetcher=ListFetcher(timeout=config.http_timeout, verify_tls=verify_tls),
    )


def build_scheduler(config: Config, syncer: IKuaiSyncer, scheduler=None):
    """Register one cron job per configured job.

    Jobs with an invalid cron expression are logged and left out. Unless
    IKUAI_CRON_SKIP_START is set every job also runs once right away.
    """
    if scheduler is None:
        scheduler = BlockingScheduler(timezone=config.timezone)

    for position, job in enumerate(config.jobs.all()):
        try:
            trigger = CronTrigger.from_crontab(job.schedule, timezone=config.timezone)
        except ValueError as e:
            logger.error(f"{job.tag}: invalid cron expression '{job.schedule}': {e}")
            continue

        options: Dict[str, Any] = {}
        if not config.cron_skip_start:
            options["next_run_time"] = datetime.now().astimezone()

        scheduler.add_job(
            syncer.run_job_safely,
            trigger=trigger,
            args=[job],
            id=f"{job.tag}#{position}",
            name=job.tag,
            misfire_grace_time=None,
            **options,
        )
        logger.info(f"Scheduled {job.tag} with '{job.schedule}' ({len(job.urls)} url(s))")

    return scheduler


def run_once(syncer: IKuaiSyncer, jobs: Sequence[JobDefinition]) -> bool:
    """Run every job a single time. Returns False if any run failed."""
    ok = True
    for job in jobs:
        if syncer.run_job_safely(job) is None:
            ok = False
    return ok


# =============================================================================
# Main
# =============================================================================


def main():
    """Main entry point."""
    try:
        config = Config.from_env()
    except ConfigError as e:
        logger.error(f"Configuration validation failed: {e}")
        sys.exit(1)

    logger.info(f"ikuai-sync: {config.ikuai_addr} as {config.ikuai_username}")
    logger.info(
        f"Jobs: {len(config.jobs.custom_isp)} custom ISP, {len(config.jobs.ip_group)} IP group, "
        f"{len(config.jobs.stream_domain)} stream domain"
    )
    logger.info(f"Sync mode: {config.sync_mode}, timezone: {config.timezone}")

    if not config.jobs:
        logger.error("No jobs configured (set IKUAI_CRON_* variables or IKUAI_JOBS_PATH)")
        sys.exit(1)

    syncer = create_syncer(config)

    if config.sync_mode == "once":
        if not run_once(syncer, config.jobs.all()):
            sys.exit(1)
        return

    scheduler = build_scheduler(config, syncer)
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down gracefully...")


if __name__ == "__main__":
    main()
