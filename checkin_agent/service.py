"""Install, remove and inspect the agent's systemd service."""

from __future__ import annotations

import logging
import os
import subprocess
import sys
from pathlib import Path
from string import Template

log = logging.getLogger(__name__)

SERVICE_NAME = "checkin-agent.service"
SERVICE_DIR = Path("/etc/systemd/system")

_UNIT_TEMPLATE = Template(
    """[Unit]
Description=Auto Checkin Agent Service
After=network.target

[Service]
Type=simple
User=root
ExecStart=$exec_path serve
Restart=on-failure
RestartSec=5

[Install]
WantedBy=multi-user.target
"""
)


class ServiceError(Exception):
    """Raised when the service cannot be installed, removed or queried."""


def render_unit(exec_path: str) -> str:
    """Return the systemd unit file that runs exec_path with `serve`."""
    return _UNIT_TEMPLATE.substitute(exec_path=exec_path)


def _require_linux(message: str) -> None:
    if not sys.platform.startswith("linux"):
        raise ServiceError(message)


def _require_root(message: str) -> None:
    if os.geteuid() != 0:
        raise ServiceError(message)


def _executable_path() -> str:
    program = sys.argv[0] if sys.argv and sys.argv[0] else sys.executable
    path = os.path.abspath(program)
    if path.endswith(".py"):
        return f"{sys.executable} {path}"
    return path


def _daemon_reload() -> None:
    try:
        subprocess.run(["systemctl", "daemon-reload"], check=True, capture_output=True)
    except (OSError, subprocess.CalledProcessError) as exc:
        raise ServiceError(f"重新加载systemd配置失败: {exc}") from exc


def install_service() -> None:
    """Write the unit file for this program and reload systemd."""
    _require_linux("仅支持在Linux系统上安装服务")
    _require_root("安装系统服务需要root权限，请使用sudo运行")

    service_path = SERVICE_DIR / SERVICE_NAME
    if service_path.exists():
        log.info("服务文件已存在: %s，将覆盖...", service_path)
    try:
        service_path.write_text(render_unit(_executable_path()), encoding="utf-8")
    except OSError as exc:
        raise ServiceError(f"创建服务文件失败: {exc}") from exc

    _daemon_reload()

    log.info("服务文件已安装: %s", service_path)
    log.info("使用以下命令启动服务: systemctl start %s", SERVICE_NAME)
    log.info("使用以下命令设置开机自启: systemctl enable %s", SERVICE_NAME)


def uninstall_service() -> None:
    """Stop and disable the service, remove its unit file and reload systemd."""
    _require_linux("仅支持在Linux系统上卸载服务")
    _require_root("卸载系统服务需要root权限，请使用sudo运行")

    for action in ("stop", "disable"):
        try:
            subprocess.run(["systemctl", action, SERVICE_NAME], capture_output=True)
        except OSError:
            pass  # the service may not be running or enabled

    try:
        (SERVICE_DIR / SERVICE_NAME).unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        raise ServiceError(f"删除服务文件失败: {exc}") from exc

    _daemon_reload()
    log.info("服务已成功卸载: %s", SERVICE_NAME)


def is_service_active() -> bool:
    """Return True if systemd reports the service as active."""
    _require_linux("仅支持在Linux系统上检查服务状态")
    try:
        completed = subprocess.run(
            ["systemctl", "is-active", SERVICE_NAME],
            check=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
        )
    except (OSError, subprocess.CalledProcessError):
        return False
    return completed.stdout.strip() == "active"


def service_status() -> str:
    """Return the combined output of `systemctl status` for the service."""
    _require_linux("仅支持在Linux系统上获取服务状态")
    try:
        completed = subprocess.run(
            ["systemctl", "status", SERVICE_NAME],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
        )
    except OSError:
        return ""
    return completed.stdout