"""HTTP API of the agent: health check, system information and task execution."""

from __future__ import annotations

import hmac
import json
import logging
import math
import threading
from dataclasses import asdict, dataclass, fields, is_dataclass
from decimal import ROUND_HALF_UP, Decimal
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Mapping
from urllib.parse import parse_qsl, urlsplit

from .config import Config
from .curl import CurlError, execute_curl_command
from .sysinfo import SystemInfoError, get_cpu_usage, get_memory_info

log = logging.getLogger(__name__)

_JSON_TYPE = "application/json"
_TEXT_TYPE = "text/plain; charset=utf-8"
_FORM_TYPE = "application/x-www-form-urlencoded"
_MEGABYTE = 1024 * 1024

_HEALTH_PATH = "/api/health"
_SYSTEM_INFO_PATH = "/api/system/info"
_EXECUTE_PATH = "/api/task/execute"

_HTML_ESCAPES = (
    ("<", "\\u003c"),
    (">", "\\u003e"),
    ("&", "\\u0026"),
    ("\u2028", "\\u2028"),
    ("\u2029", "\\u2029"),
)

Reply = tuple[int, dict[str, str], bytes]


@dataclass
class SystemInfo:
    """Memory and CPU figures reported by the system information endpoint."""

    total_memory_mb: int
    used_memory_mb: int
    memory_usage_perc: float
    cpu_usage_perc: float


@dataclass
class TaskRequest:
    """A request to run a task of a given type."""

    type: str = ""
    command: str = ""
    secure_key: str = ""


@dataclass
class Response:
    """The JSON envelope every API endpoint answers with."""

    success: bool
    message: str = ""
    data: Any = None

    def to_dict(self) -> dict[str, Any]:
        """Return the envelope as a dict, leaving out an empty message and absent data."""
        result: dict[str, Any] = {"success": self.success}
        if self.message:
            result["message"] = self.message
        if self.data is not None:
            if is_dataclass(self.data) and not isinstance(self.data, type):
                result["data"] = asdict(self.data)
            else:
                result["data"] = self.data
        return result


def _round(value: float) -> float:
    """Round to the nearest integer, halves away from zero."""
    if not math.isfinite(value):
        return value
    return float(Decimal(value).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def build_system_info(total_bytes: int, used_bytes: int, cpu_usage: float) -> SystemInfo:
    """Convert raw byte counts and CPU usage into rounded report figures."""
    memory_perc = 0.0
    if total_bytes > 0:
        memory_perc = used_bytes / total_bytes * 100.0
        memory_perc = _round(memory_perc * 100) / 100
    return SystemInfo(
        total_memory_mb=int(_round(total_bytes / _MEGABYTE)),
        used_memory_mb=int(_round(used_bytes / _MEGABYTE)),
        memory_usage_perc=memory_perc,
        cpu_usage_perc=_round(cpu_usage * 100) / 100,
    )


def _plain_numbers(value: Any) -> Any:
    """Write integral floats without a fractional part, as the wire format does."""
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer() and abs(value) < 1e21:
            return int(value)
        return value
    if isinstance(value, dict):
        return {key: _plain_numbers(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_plain_numbers(item) for item in value]
    return value


def _encode(response: Response) -> bytes:
    text = json.dumps(
        _plain_numbers(response.to_dict()), ensure_ascii=False, separators=(",", ":")
    )
    for char, escape in _HTML_ESCAPES:
        text = text.replace(char, escape)
    return (text + "\n").encode("utf-8")


def _lower_headers(headers: Mapping[str, str]) -> dict[str, str]:
    lowered: dict[str, str] = {}
    for name, value in headers.items():
        lowered.setdefault(name.lower(), value)
    return lowered


def _first_value(query: str, name: str) -> str | None:
    for key, value in parse_qsl(query, keep_blank_values=True):
        if key == name:
            return value
    return None


def _secure_key(
    method: str, headers: Mapping[str, str], body: bytes, query: str
) -> tuple[str, bytes]:
    """Find the secure key; return it with whatever of the body is left unread."""
    lowered = _lower_headers(headers)
    key = lowered.get("x-secure-key", "")
    if key or method != "POST":
        return key, body

    content_type = lowered.get("content-type", "")
    post_value = None
    if content_type.split(";", 1)[0].strip().lower() == _FORM_TYPE:
        post_value = _first_value(body.decode("utf-8", errors="replace"), "secure_key")
        body = b""
    if post_value is None:
        post_value = _first_value(query, "secure_key")
    key = post_value or ""

    if not key and content_type == _JSON_TYPE:
        try:
            data, _ = json.JSONDecoder().raw_decode(
                body.decode("utf-8", errors="replace").lstrip()
            )
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict) and isinstance(data.get("secure_key"), str):
            key = data["secure_key"]
        body = b""
    return key, body


def extract_secure_key(method: str, headers: Mapping[str, str], body: bytes) -> str:
    """Return the secure key from the header, a form field or a JSON body field."""
    key, _ = _secure_key(method, headers, body, "")
    return key


def _json_kind(value: Any) -> str:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    return "object"


def _decode_task_request(body: bytes) -> TaskRequest:
    text = body.decode("utf-8", errors="replace").lstrip()
    if not text:
        raise ValueError("EOF")
    try:
        data, _ = json.JSONDecoder().raw_decode(text)
    except json.JSONDecodeError as exc:
        raise ValueError(str(exc)) from exc
    if data is None:
        return TaskRequest()
    if not isinstance(data, dict):
        raise ValueError(f"cannot unmarshal {_json_kind(data)} into TaskRequest")

    values: dict[str, str] = {}
    for spec in fields(TaskRequest):
        value = None
        for key, item in data.items():
            if key.lower() == spec.name:
                value = item
        if value is None:
            continue
        if not isinstance(value, str):
            raise ValueError(
                f"cannot unmarshal {_json_kind(value)} into field {spec.name} of type string"
            )
        values[spec.name] = value
    return TaskRequest(**values)


def execute_task(task_request: TaskRequest) -> tuple[int, Response]:
    """Run a task request and return the HTTP status with the response."""
    if task_request.type == "1":
        try:
            result = execute_curl_command(task_request.command)
        except CurlError as exc:
            return HTTPStatus.BAD_REQUEST, Response(False, f"执行curl命令失败: {exc}")
        return HTTPStatus.OK, Response(True, data=result)
    if task_request.type == "2":
        return HTTPStatus.OK, Response(False, "Node.js命令执行功能尚未实现")
    if task_request.type == "3":
        return HTTPStatus.OK, Response(False, "Python命令执行功能尚未实现")
    return HTTPStatus.OK, Response(False, f"不支持的任务类型: {task_request.type}")


def _json_reply(status: int, response: Response) -> Reply:
    return int(status), {"Content-Type": _JSON_TYPE}, _encode(response)


def _make_handler(server: AgentServer) -> type[BaseHTTPRequestHandler]:
    class _Handler(BaseHTTPRequestHandler):
        def _handle(self) -> None:
            try:
                length = int(self.headers.get("Content-Length") or 0)
            except ValueError:
                self.send_error(HTTPStatus.BAD_REQUEST)
                return
            body = self.rfile.read(length) if length > 0 else b""
            headers: dict[str, str] = {}
            for name, value in self.headers.items():
                headers.setdefault(name.lower(), value)
            status, reply_headers, payload = server.dispatch(
                self.command, self.path, headers, body
            )
            self.send_response(status)
            for name, value in reply_headers.items():
                self.send_header(name, value)
            self.send_header("Content-Length", str(len(payload)))
            self.end_headers()
            if self.command != "HEAD":
                self.wfile.write(payload)

        do_GET = do_POST = do_PUT = do_DELETE = do_PATCH = do_HEAD = do_OPTIONS = _handle

        def log_message(self, format: str, *args: Any) -> None:
            """Send access lines to the module logger instead of stderr."""
            log.debug("%s - %s", self.address_string(), format % args)

    return _Handler


class AgentServer:
    """The agent's HTTP API, bound to the port in its configuration."""

    def __init__(self, config: Config) -> None:
        self.config = config
        self._httpd: ThreadingHTTPServer | None = None
        self._lock = threading.Lock()

    def dispatch(
        self, method: str, path: str, headers: Mapping[str, str], body: bytes = b""
    ) -> Reply:
        """Route one request and return (status, headers, body)."""
        target = urlsplit(path)
        route = target.path

        if route == _HEALTH_PATH:
            return _json_reply(HTTPStatus.OK, Response(True, "done"))

        if route not in (_SYSTEM_INFO_PATH, _EXECUTE_PATH):
            return (
                int(HTTPStatus.NOT_FOUND),
                {"Content-Type": _TEXT_TYPE, "X-Content-Type-Options": "nosniff"},
                b"404 page not found\n",
            )

        key, body = _secure_key(method, headers, body, target.query)
        if not hmac.compare_digest(key.encode("utf-8"), self.config.secure_key.encode("utf-8")):
            return (
                int(HTTPStatus.UNAUTHORIZED),
                {"Content-Type": _TEXT_TYPE},
                _encode(Response(False, "无效的安全密钥")),
            )

        if route == _SYSTEM_INFO_PATH:
            return self._system_info()
        return self._execute(method, body)

    def _system_info(self) -> Reply:
        try:
            total, used = get_memory_info()
        except SystemInfoError as exc:
            return _json_reply(
                HTTPStatus.INTERNAL_SERVER_ERROR, Response(False, f"获取内存信息失败: {exc}")
            )
        try:
            cpu = get_cpu_usage()
        except SystemInfoError as exc:
            return _json_reply(
                HTTPStatus.INTERNAL_SERVER_ERROR, Response(False, f"获取CPU信息失败: {exc}")
            )
        return _json_reply(HTTPStatus.OK, Response(True, data=build_system_info(total, used, cpu)))

    def _execute(self, method: str, body: bytes) -> Reply:
        if method != "POST":
            return _json_reply(HTTPStatus.METHOD_NOT_ALLOWED, Response(False, "仅支持POST请求"))
        try:
            request = _decode_task_request(body)
        except ValueError as exc:
            return _json_reply(HTTPStatus.BAD_REQUEST, Response(False, f"无法解析请求体: {exc}"))
        status, response = execute_task(request)
        return _json_reply(status, response)

    def start(self) -> None:
        """Listen on the configured port and serve until stop() is called."""
        httpd = ThreadingHTTPServer(("", self.config.port), _make_handler(self))
        httpd.daemon_threads = True
        with self._lock:
            self._httpd = httpd
        log.info("API服务启动，监听地址: :%d", self.config.port)
        try:
            httpd.serve_forever()
        finally:
            httpd.server_close()

    def stop(self) -> None:
        """Stop serving; does nothing if the server is not running."""
        with self._lock:
            httpd, self._httpd = self._httpd, None
        if httpd is not None:
            httpd.shutdown()