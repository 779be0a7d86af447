#!/usr/bin/env python3
"""
prtg_speedtest.py

A PRTG "EXE/Script Advanced" sensor for the Ookla Speedtest CLI (`speedtest`).

It runs `speedtest -f json`, checks that the result is complete, converts the numbers
into PRTG's unit system and prints one XML document with a channel per metric.

Practical notes:
- Exactly one well-formed XML document is printed to stdout on every path, failures
  included, so PRTG never sees empty or truncated output. Logging goes to stderr
  (and optionally a log file), never to stdout.
- Ookla rate limits aggressive polling. Exit code 429 is retried with exponential
  backoff (10s, 20s, ...); keep the sensor interval at 30 minutes or more.
- The PRTG sensor timeout should cover one full test plus the backoff (~90s+).

Usage (the PRTG "Parameters" field is passed through verbatim):
    prtg_speedtest.py                      # default interface
    prtg_speedtest.py 192.0.2.10           # bind to a source address
    prtg_speedtest.py -i 192.0.2.10 -d     # ... plus latency/jitter/loss channels

Exit status: 0 after a result document, 1 after an error document.
"""
from __future__ import annotations

import argparse
import ipaddress
import json
import logging
import math
import os
import re
import shutil
import subprocess
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
from xml.sax.saxutils import escape


APP_NAME = "prtg_speedtest"
RATE_LIMIT_EXIT_CODE = 429
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_S = 10.0
DEFAULT_INTERFACE_LABEL = "Default Interface"
UNKNOWN_SERVER_LABEL = "Unknown Server"
DETAILED_TOKENS = ("-d", "-detailed", "--detailed")
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"

# ANSI escapes from the CLI, then anything XML 1.0 cannot carry.
ANSI_ESCAPE_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
INVALID_XML_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\ud800-\udfff\ufffe\uffff]")

log = logging.getLogger(APP_NAME)

Number = Union[int, float]


# ----------------------------
# Errors
# ----------------------------
class SensorError(Exception):
    """A failure that ends the run with a PRTG error document."""


class UsageError(SensorError):
    pass


class InvalidAddressError(SensorError):
    pass


class SpeedtestFailedError(SensorError):
    def __init__(self, message: str, exit_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class RetriesExhaustedError(SpeedtestFailedError):
    """Every attempt was rate limited."""


class IncompleteResultError(SensorError):
    pass


# ----------------------------
# Utilities
# ----------------------------
def which(cmd: str) -> Optional[str]:
    return shutil.which(cmd)


def run_cmd(cmd: List[str], timeout_s: Optional[float] = None) -> Tuple[int, str, str]:
    """Run a command and return (exit_code, stdout, stderr)."""
    try:
        p = subprocess.run(
            cmd,
            check=False,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=timeout_s,
        )
        return p.returncode, p.stdout.strip(), p.stderr.strip()
    except FileNotFoundError:
        return 127, "", f"Command not found: {cmd[0]}"
    except subprocess.TimeoutExpired:
        return 124, "", f"Timeout after {timeout_s}s: {' '.join(cmd)}"


def safe_float(x: Any) -> Optional[float]:
    try:
        if x is None or isinstance(x, bool):
            return None
        v = float(x)
    except (TypeError, ValueError):
        return None
    return v if math.isfinite(v) else None


def safe_text(x: Any) -> Optional[str]:
    if x is None or isinstance(x, (dict, list)):
        return None
    s = str(x).strip()
    return s or None


def xml_escape(text: str) -> str:
    text = INVALID_XML_CHARS_RE.sub("", ANSI_ESCAPE_RE.sub("", text))
    return escape(text, {'"': "&quot;", "'": "&apos;"})


def setup_logging(log_path: Optional[Path] = None, verbose: bool = False) -> logging.Logger:
    """Send log records to stderr and, if given, append them to log_path."""
    for handler in list(log.handlers):
        log.removeHandler(handler)
        handler.close()

    level = logging.DEBUG if verbose else logging.INFO
    log.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console_handler.setFormatter(formatter)
    log.addHandler(console_handler)

    if log_path:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        log.addHandler(file_handler)

    return log


# ----------------------------
# Data models
# ----------------------------
@dataclass(frozen=True)
class InvocationParameters:
    source_ip: Optional[str] = None
    detailed: bool = False


@dataclass
class LatencyStats:
    iqm: Optional[float] = None
    low: Optional[float] = None
    high: Optional[float] = None
    jitter: Optional[float] = None


@dataclass
class TransferResult:
    bandwidth: Optional[float]  # bytes/sec
    latency: LatencyStats


@dataclass
class PingResult:
    latency: Optional[float] = None
    jitter: Optional[float] = None
    low: Optional[float] = None
    high: Optional[float] = None


@dataclass
class ServerInfo:
    host: Optional[str] = None
    ip: Optional[str] = None
    location: Optional[str] = None
    country: Optional[str] = None


@dataclass
class SpeedtestResult:
    download: Optional[TransferResult]
    upload: Optional[TransferResult]
    ping: Optional[PingResult]
    server: ServerInfo
    isp: Optional[str]
    external_ip: Optional[str]
    packet_loss: Optional[float]


@dataclass(frozen=True)
class Channel:
    name: str
    value: Number
    unit: str
    is_float: bool = False
    custom_unit: Optional[str] = None
    speed_size: Optional[str] = None


@dataclass
class Report:
    channels: List[Channel] = field(default_factory=list)
    text: str = ""
    error: bool = False

    @classmethod
    def failure(cls, message: str) -> "Report":
        return cls(text=message, error=True)

    def to_xml(self) -> str:
        lines = ['<?xml version="1.0" encoding="UTF-8"?>', "<prtg>"]
        if self.error:
            lines.append("  <error>1</error>")
        else:
            for ch in self.channels:
                lines.append("  <result>")
                lines.append(f"    <channel>{xml_escape(ch.name)}</channel>")
                lines.append(f"    <value>{ch.value}</value>")
                lines.append(f"    <unit>{xml_escape(ch.unit)}</unit>")
                if ch.custom_unit:
                    lines.append(f"    <customunit>{xml_escape(ch.custom_unit)}</customunit>")
                if ch.speed_size:
                    lines.append(f"    <speedsize>{xml_escape(ch.speed_size)}</speedsize>")
                if ch.is_float:
                    lines.append("    <float>1</float>")
                lines.append("  </result>")
        lines.append(f"  <text>{xml_escape(self.text)}</text>")
        lines.append("</prtg>")
        return "\n".join(lines) + "\n"


# ----------------------------
# Arguments
# ----------------------------
class SensorArgumentParser(argparse.ArgumentParser):
    """An ArgumentParser that raises instead of printing usage and exiting."""

    def error(self, message: str) -> None:  # type: ignore[override]
        raise UsageError(f"Invalid arguments: {message}")


def build_arg_parser() -> argparse.ArgumentParser:
    p = SensorArgumentParser(
        prog=APP_NAME,
        description="PRTG EXE/Script Advanced sensor for the Ookla Speedtest CLI.",
        add_help=False,
        allow_abbrev=False,
    )

    # PRTG parameters field
    p.add_argument("-i", dest="ip", default=None, help="Source IP address to bind the test to.")
    p.add_argument("-ipaddress", "--ipaddress", dest="ipaddress", default=None, help="Alias for -i.")
    p.add_argument("-d", "-detailed", "--detailed", dest="detailed", action="store_true",
                   help="Also emit latency, jitter and packet loss channels.")
    p.add_argument("extra", nargs="*", help="Plain invocation: first token is the source IP.")

    # speedtest CLI
    p.add_argument("--speedtest", type=str,
                   default=os.environ.get("PRTG_SPEEDTEST_EXE") or which("speedtest") or "speedtest",
                   help="Path to the Ookla speedtest executable.")
    p.add_argument("--server-id", type=str, default=None, help="Force Ookla server id (-s).")
    p.add_argument("--max-attempts", type=int, default=DEFAULT_MAX_ATTEMPTS,
                   help="Attempts when rate limited (exit code 429), including the first.")
    p.add_argument("--retry-delay", type=float, default=DEFAULT_RETRY_DELAY_S,
                   help="Seconds to wait after the first rate-limited attempt; doubles each retry.")
    p.add_argument("--timeout", type=float, default=None,
                   help="Per-attempt timeout in seconds (default: none, PRTG enforces its own).")

    # logging
    env_log = os.environ.get("PRTG_SPEEDTEST_LOG")
    p.add_argument("--log", type=Path, default=Path(env_log) if env_log else None,
                   help="Append log records to this file.")
    p.add_argument("--verbose", action="store_true", help="Debug logging on stderr.")
    return p


def resolve_parameters(args: argparse.Namespace, leftovers: Sequence[str] = ()) -> InvocationParameters:
    """
    Named -i wins over -ipaddress, which wins over the first bare token.
    -d/--detailed anywhere among the leftovers also turns detailed mode on.
    """
    tokens = list(getattr(args, "extra", None) or []) + list(leftovers)
    bare = [t for t in tokens if t and not t.startswith("-")]

    source_ip = None
    for candidate in (args.ip, args.ipaddress, bare[0] if bare else None):
        if candidate and candidate.strip():
            source_ip = candidate.strip()
            break

    detailed = bool(args.detailed) or any(t.lower() in DETAILED_TOKENS for t in tokens)
    return InvocationParameters(source_ip=source_ip, detailed=detailed)


def validate_source_ip(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    try:
        ipaddress.ip_address(value)
    except ValueError:
        raise InvalidAddressError(f"Invalid IP address: {value}") from None
    return value


# ----------------------------
# Ookla Speedtest CLI
# ----------------------------
def build_speedtest_cmd(
    exe: str,
    source_ip: Optional[str] = None,
    server_id: Optional[str] = None,
) -> List[str]:
    cmd = [exe, "--accept-license", "--accept-gdpr", "-f", "json", "-p", "no"]
    if source_ip:
        cmd += ["--ip", source_ip]
    if server_id:
        cmd += ["-s", str(server_id)]
    return cmd


def run_speedtest(
    exe: str,
    source_ip: Optional[str] = None,
    server_id: Optional[str] = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    retry_delay_s: float = DEFAULT_RETRY_DELAY_S,
    timeout_s: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Runs the speedtest CLI and returns its decoded JSON result.

    Only exit code 429 (rate limited) is retried, sleeping retry_delay_s and doubling it
    between attempts. Everything else that is not a clean JSON object on exit 0 fails at once.
    """
    cmd = build_speedtest_cmd(exe, source_ip=source_ip, server_id=server_id)
    attempts = max(1, max_attempts)
    delay = retry_delay_s

    for attempt in range(1, attempts + 1):
        log.info("Running speedtest (attempt %d/%d): %s", attempt, attempts, " ".join(cmd))
        rc, out, err = run_cmd(cmd, timeout_s=timeout_s)

        if rc == RATE_LIMIT_EXIT_CODE:
            if attempt == attempts:
                break
            log.warning("Speedtest rate limited (exit %d), retrying in %gs", rc, delay)
            time.sleep(delay)
            delay *= 2
            continue

        if rc != 0:
            msg = f"Speedtest exited with code {rc}"
            if err:
                msg += f": {err}"
            raise SpeedtestFailedError(msg, exit_code=rc)

        if not out:
            raise SpeedtestFailedError("Speedtest returned no output", exit_code=rc)

        try:
            payload = json.loads(out)
        except json.JSONDecodeError as exc:
            raise SpeedtestFailedError(f"Speedtest output is not valid JSON: {exc}", exit_code=rc) from exc
        if not isinstance(payload, dict):
            raise SpeedtestFailedError("Speedtest output is not a JSON object", exit_code=rc)

        log.debug("Speedtest result: %s", out)
        return payload

    raise RetriesExhaustedError(
        f"Speedtest rate limited, giving up after {attempts} attempts",
        exit_code=RATE_LIMIT_EXIT_CODE,
    )


def _record(payload: Dict[str, Any], key: str) -> Optional[Dict[str, Any]]:
    v = payload.get(key)
    return v if isinstance(v, dict) and v else None


def parse_speedtest_json(payload: Dict[str, Any]) -> SpeedtestResult:
    """
    Parses `speedtest -f json` output.

    Bandwidth is kept in bytes/sec here; conversion happens when channels are built.
    """
    def transfer(key: str) -> Optional[TransferResult]:
        rec = _record(payload, key)
        if rec is None:
            return None
        lat = _record(rec, "latency") or {}
        return TransferResult(
            bandwidth=safe_float(rec.get("bandwidth")),
            latency=LatencyStats(
                iqm=safe_float(lat.get("iqm")),
                low=safe_float(lat.get("low")),
                high=safe_float(lat.get("high")),
                jitter=safe_float(lat.get("jitter")),
            ),
        )

    ping_rec = _record(payload, "ping")
    ping = None
    if ping_rec is not None:
        ping = PingResult(
            latency=safe_float(ping_rec.get("latency")),
            jitter=safe_float(ping_rec.get("jitter")),
            low=safe_float(ping_rec.get("low")),
            high=safe_float(ping_rec.get("high")),
        )

    server = _record(payload, "server") or {}
    interface = _record(payload, "interface") or {}

    return SpeedtestResult(
        download=transfer("download"),
        upload=transfer("upload"),
        ping=ping,
        server=ServerInfo(
            host=safe_text(server.get("host")),
            ip=safe_text(server.get("ip")),
            location=safe_text(server.get("location")),
            country=safe_text(server.get("country")),
        ),
        isp=safe_text(payload.get("isp")),
        external_ip=safe_text(interface.get("externalIp")),
        packet_loss=safe_float(payload.get("packetLoss")),
    )


def validate_result(result: SpeedtestResult) -> SpeedtestResult:
    missing = [
        name
        for name, rec in (("download", result.download), ("upload", result.upload), ("ping", result.ping))
        if rec is None
    ]
    if missing:
        raise IncompleteResultError(f"Incomplete speedtest data: missing {', '.join(missing)}")
    return result


# ----------------------------
# Conversion
# ----------------------------
def bits_per_second(bandwidth: Optional[float]) -> int:
    if bandwidth is None:
        return 0
    return int(round(bandwidth * 8))


def ping_ms(latency: Optional[float]) -> Number:
    if latency is None:
        return 0
    return round(latency, 2)


def optional_ms(v: Optional[float]) -> Optional[float]:
    if not v:
        return None
    return round(v, 2)


def packet_loss_pct(v: Optional[float]) -> Optional[float]:
    if v is None:
        return None
    return round(v, 3)


# ----------------------------
# Rendering
# ----------------------------
def _speed(name: str, bps: int) -> Channel:
    return Channel(name, bps, "SpeedNet", speed_size="MegaBit")


def _ms(name: str, v: float) -> Channel:
    return Channel(name, v, "TimeResponse", is_float=True)


def _jitter(name: str, v: float) -> Channel:
    return Channel(name, v, "Custom", is_float=True, custom_unit="ms")


def build_channels(result: SpeedtestResult, detailed: bool = False) -> List[Channel]:
    download = result.download or TransferResult(None, LatencyStats())
    upload = result.upload or TransferResult(None, LatencyStats())
    ping = result.ping or PingResult()

    channels = [
        _speed("Download Speed", bits_per_second(download.bandwidth)),
        _speed("Upload Speed", bits_per_second(upload.bandwidth)),
        _ms("Ping", ping_ms(ping.latency)),
    ]
    if not detailed:
        return channels

    candidates = []
    for label, t in (("Download", download), ("Upload", upload)):
        candidates += [
            (_ms, f"{label} Latency IQM", t.latency.iqm),
            (_ms, f"{label} Latency Low", t.latency.low),
            (_ms, f"{label} Latency High", t.latency.high),
            (_jitter, f"{label} Jitter", t.latency.jitter),
        ]
    candidates += [
        (_jitter, "Ping Jitter", ping.jitter),
        (_ms, "Ping Low", ping.low),
        (_ms, "Ping High", ping.high),
    ]
    for make, name, raw in candidates:
        v = optional_ms(raw)
        if v is not None:
            channels.append(make(name, v))

    loss = packet_loss_pct(result.packet_loss)
    if loss is not None:
        channels.append(Channel("Packet Loss", loss, "Percent", is_float=True))
    return channels


def summary_text(result: SpeedtestResult, source_ip: Optional[str] = None) -> str:
    server = result.server
    parts = [f"Speedtest via {source_ip or DEFAULT_INTERFACE_LABEL} on {server.host or UNKNOWN_SERVER_LABEL}"]
    if result.isp:
        parts.append(f"ISP: {result.isp}")
    if result.external_ip:
        parts.append(f"ExternalIP: {result.external_ip}")
    if server.ip:
        parts.append(f"ServerIP: {server.ip}")
    location = ", ".join(p for p in (server.location, server.country) if p)
    if location:
        parts.append(f"ServerLocation: {location}")
    return " | ".join(parts)


def build_report(result: SpeedtestResult, params: InvocationParameters) -> Report:
    return Report(
        channels=build_channels(result, detailed=params.detailed),
        text=summary_text(result, params.source_ip),
    )


# ----------------------------
# Orchestration
# ----------------------------
def run_once(params: InvocationParameters, args: argparse.Namespace) -> Report:
    payload = run_speedtest(
        args.speedtest,
        source_ip=params.source_ip,
        server_id=args.server_id,
        max_attempts=args.max_attempts,
        retry_delay_s=args.retry_delay,
        timeout_s=args.timeout,
    )
    result = validate_result(parse_speedtest_json(payload))
    return build_report(result, params)


def write_document(report: Report) -> None:
    """Writes the document as UTF-8 bytes, whatever the console code page is."""
    document = report.to_xml()
    sys.stdout.flush()
    buffer = getattr(sys.stdout, "buffer", None)
    if buffer is None:
        sys.stdout.write(document)
        sys.stdout.flush()
        return
    buffer.write(document.encode("utf-8"))
    buffer.flush()


def main(argv: Optional[Sequence[str]] = None) -> int:
    status = 1
    try:
        args, leftovers = build_arg_parser().parse_known_args(argv)
        setup_logging(args.log, verbose=args.verbose)
        params = resolve_parameters(args, leftovers)
        validate_source_ip(params.source_ip)
        report = run_once(params, args)
        status = 0
    except SensorError as exc:
        log.error("%s: %s", type(exc).__name__, exc)
        report = Report.failure(str(exc))
    except Exception as exc:
        log.exception("Unexpected error")
        report = Report.failure(f"Unexpected error: {exc}")

    write_document(report)
    return status


if __name__ == "__main__":
    raise SystemExit(main())
