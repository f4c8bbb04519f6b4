"""Agent configuration: the secure key and listening port, stored as JSON."""

from __future__ import annotations

import json
import os
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_PATH = "./agent_config.json"
DEFAULT_PORT = 8080
_KEY_BYTES = 32


class ConfigError(Exception):
    """Raised when the configuration cannot be loaded, validated or saved."""


def generate_secure_key() -> str:
    """Return 32 random bytes as a lower-case hex string."""
    return secrets.token_hex(_KEY_BYTES)


@dataclass
class Config:
    """Agent settings together with the file they are kept in."""

    secure_key: str
    port: int
    file_path: Path

    def validate(self) -> None:
        """Raise ConfigError if the key is empty or the port is out of range."""
        if not self.secure_key:
            raise ConfigError("配置缺少安全密钥")
        if self.port <= 0 or self.port > 65535:
            raise ConfigError(f"端口号无效: {self.port}")

    def save(self) -> None:
        """Write the configuration to its file, creating directories as needed."""
        text = json.dumps(
            {"secure_key": self.secure_key, "port": self.port},
            indent=2,
            ensure_ascii=False,
        )
        path = Path(self.file_path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ConfigError(f"创建目录失败: {exc}") from exc
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "wb") as handle:
                handle.write(text.encode("utf-8"))
        except OSError as exc:
            raise ConfigError(f"写入配置文件失败: {exc}") from exc

    def regenerate_secure_key(self) -> str:
        """Replace the secure key with a fresh one, save, and return it."""
        new_key = generate_secure_key()
        self.secure_key = new_key
        self.save()
        return new_key


def _field(data: dict[str, Any], name: str) -> Any:
    """Look up a JSON field by name, matching case-insensitively; last match wins."""
    value = None
    for key, item in data.items():
        if key.lower() == name:
            value = item
    return value


def _decode(text: str, path: Path) -> Config:
    decoder = json.JSONDecoder()
    try:
        data, _ = decoder.raw_decode(text.lstrip())
    except json.JSONDecodeError as exc:
        raise ConfigError(f"解析配置文件失败: {exc}") from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError("解析配置文件失败: 配置必须是JSON对象")

    secure_key = _field(data, "secure_key")
    if secure_key is None:
        secure_key = ""
    elif not isinstance(secure_key, str):
        raise ConfigError("解析配置文件失败: secure_key 必须是字符串")

    port = _field(data, "port")
    if port is None:
        port = 0
    elif isinstance(port, bool) or not isinstance(port, int):
        raise ConfigError("解析配置文件失败: port 必须是整数")

    return Config(secure_key=secure_key, port=port, file_path=path)


def _create_default(path: Path) -> Config:
    config = Config(secure_key=generate_secure_key(), port=DEFAULT_PORT, file_path=path)
    config.save()
    print(f"已创建默认配置文件: {path}")
    print(f"安全密钥: {config.secure_key}")
    return config


def load_config(config_path: str | os.PathLike[str] | None = None) -> Config:
    """Load the configuration, creating a default file if none exists."""
    path = Path(os.path.abspath(config_path or DEFAULT_CONFIG_PATH))

    try:
        path.stat()
    except FileNotFoundError:
        return _create_default(path)
    except OSError as exc:
        raise ConfigError(f"检查配置文件状态失败: {exc}") from exc

    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigError(f"打开配置文件失败: {exc}") from exc

    config = _decode(text, path)
    config.validate()
    return config