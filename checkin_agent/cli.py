"""Command line entry point: run the API server or manage keys and the service."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from collections.abc import Sequence

from .config import ConfigError, load_config
from .server import AgentServer
from .service import ServiceError, install_service, service_status, uninstall_service

log = logging.getLogger(__name__)

VERSION = "1.0.0"
BUILD_TIME = "未知构建时间"
GIT_COMMIT = "未知提交"

_CONFIG_HELP = "配置文件路径 (默认: ./agent_config.json)"
_JOIN_SECONDS = 5.0


def start_server(config_path: str | None = None) -> None:
    """Serve the API until SIGINT or SIGTERM arrives."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise ConfigError(f"加载配置失败: {exc}") from exc

    server = AgentServer(config)
    done = threading.Event()
    failures: list[Exception] = []
    received: list[int] = []

    def serve() -> None:
        try:
            server.start()
        except Exception as exc:  # reported to the caller below
            failures.append(exc)
        finally:
            done.set()

    def on_signal(signum: int, frame: object) -> None:
        received.append(signum)
        done.set()

    previous = {sig: signal.signal(sig, on_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    thread = threading.Thread(target=serve, name="agent-server", daemon=True)
    try:
        thread.start()
        while not done.wait(0.5):
            pass
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    if failures:
        raise failures[0]

    if received:
        log.info("接收到信号 %s, 正在优雅退出...", signal.Signals(received[0]).name)
    server.stop()
    thread.join(_JOIN_SECONDS)


def regenerate_key(config_path: str | None = None) -> str:
    """Replace the secure key in the configuration file, print and return it."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise ConfigError(f"加载配置失败: {exc}") from exc
    try:
        new_key = config.regenerate_secure_key()
    except ConfigError as exc:
        raise ConfigError(f"重新生成安全密钥失败: {exc}") from exc
    print(f"安全密钥已重新生成: {new_key}")
    return new_key


def _main_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="checkin-agent", allow_abbrev=False)
    parser.add_argument("-config", "--config", default="", help=_CONFIG_HELP)
    parser.add_argument("-version", "--version", action="store_true", help="显示版本信息")
    parser.add_argument(
        "-regenerate-key", "--regenerate-key", dest="regenerate_key",
        action="store_true", help="重新生成安全密钥",
    )
    parser.add_argument(
        "-install-service", "--install-service", dest="install_service",
        action="store_true", help="安装系统服务 (仅Linux)",
    )
    parser.add_argument(
        "-uninstall-service", "--uninstall-service", dest="uninstall_service",
        action="store_true", help="卸载系统服务 (仅Linux)",
    )
    parser.add_argument(
        "-service-status", "--service-status", dest="service_status",
        action="store_true", help="检查服务状态 (仅Linux)",
    )
    parser.add_argument("extra", nargs="*", help=argparse.SUPPRESS)
    return parser


def _serve_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="serve", allow_abbrev=False)
    parser.add_argument("-config", "--config", default="", help=_CONFIG_HELP)
    parser.add_argument("extra", nargs="*", help=argparse.SUPPRESS)
    return parser


def _fail(prefix: str, exc: BaseException) -> int:
    log.error("%s: %s", prefix, exc)
    return 1


def _serve(config_path: str) -> int:
    try:
        start_server(config_path)
    except Exception as exc:
        return _fail("启动服务器失败", exc)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Run the command line; return the process exit status."""
    args = list(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s %(message)s", datefmt="%Y/%m/%d %H:%M:%S"
    )

    if args and args[0] == "serve":
        return _serve(_serve_parser().parse_args(args[1:]).config)

    options = _main_parser().parse_args(args)

    if options.version:
        print(f"自动签到系统 Agent 版本 {VERSION}")
        print(f"构建时间: {BUILD_TIME}")
        print(f"Git提交: {GIT_COMMIT}")
        return 0

    if options.regenerate_key:
        try:
            regenerate_key(options.config)
        except ConfigError as exc:
            return _fail("重新生成密钥失败", exc)
        return 0

    if options.install_service:
        try:
            install_service()
        except ServiceError as exc:
            return _fail("安装服务失败", exc)
        return 0

    if options.uninstall_service:
        try:
            uninstall_service()
        except ServiceError as exc:
            return _fail("卸载服务失败", exc)
        return 0

    if options.service_status:
        try:
            status = service_status()
        except ServiceError as exc:
            return _fail("获取服务状态失败", exc)
        print(status)
        return 0

    return _serve(options.config)


if __name__ == "__main__":
    sys.exit(main())