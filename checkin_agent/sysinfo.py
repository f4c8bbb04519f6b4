"""Host memory and CPU usage, with command-line fallbacks."""

from __future__ import annotations

import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import Any

import psutil

_UINT64_MAX = 2**64 - 1
_PAGE_SIZE = 4096
_SAMPLE_SECONDS = 0.2
_PSUTIL_ERRORS = (OSError, RuntimeError, NotImplementedError, psutil.Error)


class SystemInfoError(Exception):
    """Raised when system statistics cannot be gathered or parsed."""


def _parse_uint(text: str) -> int:
    """Parse an unsigned decimal integer, yielding 0 for anything invalid."""
    if text and text.isascii() and text.isdigit():
        return min(int(text), _UINT64_MAX)
    return 0


def _run(*args: str) -> str:
    try:
        completed = subprocess.run(args, capture_output=True, text=True, check=True)
    except (OSError, subprocess.CalledProcessError) as exc:
        raise SystemInfoError(f"执行 {args[0]} 失败: {exc}") from exc
    return completed.stdout


def _wmic_value(output: str, key: str) -> str:
    _, found, rest = output.partition(key)
    if not found:
        raise SystemInfoError(f"wmic输出缺少 {key}")
    return rest.split("\n", 1)[0].replace("\r", "").strip()


def parse_wmic_memory(output: str) -> tuple[int, int]:
    """Return (total, used) bytes from `wmic OS get ... /Value` output."""
    total_kb = _parse_uint(_wmic_value(output, "TotalVisibleMemorySize="))
    free_kb = _parse_uint(_wmic_value(output, "FreePhysicalMemory="))
    return total_kb * 1024, max(total_kb - free_kb, 0) * 1024


def parse_free_output(output: str) -> tuple[int, int]:
    """Return (total, used) bytes from `free -b` output."""
    lines = output.split("\n")
    if len(lines) < 2:
        raise SystemInfoError("意外的free命令输出格式")
    fields = lines[1].split()
    if len(fields) < 3:
        raise SystemInfoError("无法解析内存信息")
    return _parse_uint(fields[1]), _parse_uint(fields[2])


def parse_vm_stat_free(output: str) -> int:
    """Return free bytes from `vm_stat` output, or 0 if it is not reported."""
    for line in output.split("\n"):
        if "Pages free:" in line:
            parts = line.split(":")
            if len(parts) >= 2:
                return _parse_uint(parts[1].replace(".", "").strip()) * _PAGE_SIZE
            return 0
    return 0


def parse_wmic_cpu_load(output: str) -> float:
    """Return the load percentage from `wmic cpu get LoadPercentage` output."""
    lines = output.split("\n")
    if len(lines) < 2:
        raise SystemInfoError("意外的wmic命令输出格式")
    text = lines[1].strip()
    try:
        return float(text)
    except ValueError as exc:
        raise SystemInfoError(f"无法解析CPU负载: {text!r}") from exc


def parse_top_cpu_usage(output: str) -> float:
    """Return the user CPU percentage from the `CPU usage` line of `top`."""
    for line in output.split("\n"):
        if "CPU usage" not in line:
            continue
        parts = line.split(": ")
        if len(parts) < 2:
            continue
        text = parts[1].split("%")[0]
        try:
            return float(text)
        except ValueError as exc:
            raise SystemInfoError(f"无法解析CPU使用率: {text!r}") from exc
    raise SystemInfoError("top输出中没有CPU usage信息")


def parse_cpu_stat(text: str) -> dict[str, int]:
    """Return the idle and total jiffies from the first line of /proc/stat."""
    fields = text.split("\n")[0].split()
    if len(fields) < 5 or fields[0] != "cpu":
        raise SystemInfoError("无效的CPU统计格式")
    values = [_parse_uint(field) for field in fields[1:]]
    return {"idle": values[3], "total": sum(values)}


def read_cpu_stat() -> dict[str, int]:
    """Read the aggregate CPU counters from /proc/stat (Linux only)."""
    if not sys.platform.startswith("linux"):
        raise SystemInfoError("该函数仅支持Linux系统")
    try:
        text = Path("/proc/stat").read_text()
    except OSError as exc:
        raise SystemInfoError(f"无法读取CPU统计: {exc}") from exc
    return parse_cpu_stat(text)


def _fallback_memory_info() -> tuple[int, int]:
    platform = sys.platform
    if platform == "win32":
        return parse_wmic_memory(
            _run("wmic", "OS", "get", "TotalVisibleMemorySize,FreePhysicalMemory", "/Value")
        )
    if platform.startswith("linux"):
        return parse_free_output(_run("free", "-b"))
    if platform == "darwin":
        total = _parse_uint(_run("sysctl", "-n", "hw.memsize").strip())
        free = parse_vm_stat_free(_run("vm_stat"))
        return total, max(total - free, 0)
    raise SystemInfoError("不支持的操作系统")


def get_memory_info() -> tuple[int, int]:
    """Return (total, used) physical memory in bytes."""
    try:
        memory = psutil.virtual_memory()
    except _PSUTIL_ERRORS:
        return _fallback_memory_info()
    return int(memory.total), int(memory.used)


def _fallback_cpu_usage() -> float:
    platform = sys.platform
    if platform == "win32":
        return parse_wmic_cpu_load(_run("wmic", "cpu", "get", "LoadPercentage"))
    if platform.startswith("linux"):
        first = read_cpu_stat()
        time.sleep(_SAMPLE_SECONDS)
        second = read_cpu_stat()
        idle_delta = second["idle"] - first["idle"]
        total_delta = second["total"] - first["total"]
        if total_delta == 0:
            return 0.0
        return 100.0 * (1.0 - idle_delta / total_delta)
    if platform == "darwin":
        try:
            return parse_top_cpu_usage(_run("top", "-l", "1", "-n", "0", "-S"))
        except SystemInfoError as exc:
            if "CPU usage" in str(exc):
                raise SystemInfoError("不支持的操作系统") from exc
            raise
    raise SystemInfoError("不支持的操作系统")


def get_cpu_usage() -> float:
    """Return overall CPU usage in percent, sampled over 200 ms."""
    try:
        return float(psutil.cpu_percent(interval=_SAMPLE_SECONDS, percpu=False))
    except _PSUTIL_ERRORS:
        return _fallback_cpu_usage()


def get_runtime_info() -> dict[str, Any]:
    """Return thread count and memory figures for the running process."""
    memory = psutil.Process().memory_info()
    return {
        "num_threads": threading.active_count(),
        "allocated_bytes": int(memory.rss),
        "sys_bytes": int(memory.vms),
    }