"""Run a restricted curl command line as an HTTP request."""

from __future__ import annotations

import http.client
import shlex
import ssl
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

_CONTROL_CHARS = "|&<>"
_DATA_OPTIONS = frozenset({"-d", "--data", "--data-ascii", "--data-binary", "--data-raw"})


class Task(ABC):
    """A unit of work that produces text output."""

    @abstractmethod
    def execute(self) -> str:
        """Run the task and return its output."""


class CurlError(Exception):
    """Raised when a curl command is rejected or its request fails."""


@dataclass
class CurlRequest(Task):
    """An HTTP request described by a curl command line."""

    url: str
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    data: str = ""
    insecure: bool = False

    def _build(self) -> urllib.request.Request:
        body = self.data.encode("utf-8") if self.data else None
        try:
            request = urllib.request.Request(self.url, data=body, method=self.method)
        except ValueError as exc:
            raise CurlError(f"创建HTTP请求失败: {exc}") from exc
        for name, value in self.headers.items():
            request.add_header(name, value)
        if (
            self.method in ("POST", "PUT")
            and self.data
            and not request.has_header("Content-type")
        ):
            request.add_header("Content-Type", "application/x-www-form-urlencoded")
        return request

    def _opener(self) -> urllib.request.OpenerDirector:
        if not self.insecure:
            return urllib.request.build_opener()
        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        return urllib.request.build_opener(urllib.request.HTTPSHandler(context=context))

    def execute(self) -> str:
        """Send the request and return the response body, whatever the status."""
        request = self._build()
        try:
            with self._opener().open(request) as response:
                payload = response.read()
        except urllib.error.HTTPError as exc:
            with exc:
                payload = exc.read()
        except (urllib.error.URLError, ValueError, OSError, http.client.HTTPException) as exc:
            raise CurlError(f"执行HTTP请求失败: {exc}") from exc
        return payload.decode("utf-8", errors="replace")


def _split_words(command: str) -> list[str]:
    """Split a command line shell-style, stopping at an unquoted control operator."""
    lexer = shlex.shlex(command, posix=True, punctuation_chars=_CONTROL_CHARS)
    lexer.whitespace_split = True
    lexer.commenters = ""
    words = []
    try:
        for word in lexer:
            if word and set(word) <= set(_CONTROL_CHARS):
                break
            words.append(word)
    except ValueError as exc:
        raise CurlError(f"解析curl命令失败: {exc}") from exc
    return words


def parse_curl_command(command: str) -> CurlRequest:
    """Check and parse a curl command line into a CurlRequest."""
    command = command.strip()
    if not command.startswith("curl"):
        raise CurlError("命令必须以curl开头")
    if ";" in command:
        raise CurlError("不允许使用分号执行多条命令")

    words = _split_words(command)
    if len(words) < 2:
        raise CurlError("无效的curl命令")

    url = ""
    method = "GET"
    headers: dict[str, str] = {}
    data = ""
    insecure = False

    args = iter(words[1:])
    for arg in args:
        if not arg.startswith("-") and not url:
            url = arg
            continue
        if arg in ("-X", "--request"):
            value = next(args, None)
            if value is not None:
                method = value
        elif arg in ("-H", "--header"):
            line = next(args, None)
            if line is not None and ":" in line:
                name, _, value = line.partition(":")
                headers[name.strip()] = value.strip()
        elif arg in _DATA_OPTIONS:
            value = next(args, None)
            if value is not None:
                data = value
                if method == "GET":
                    method = "POST"
        elif arg in ("-k", "--insecure"):
            insecure = True

    if not url:
        raise CurlError("未指定URL")

    return CurlRequest(url=url, method=method, headers=headers, data=data, insecure=insecure)


def execute_curl_command(command: str) -> str:
    """Parse a curl command line, perform the request and return the body."""
    return parse_curl_command(command).execute()