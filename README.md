# checkin-agent

A small agent you run on a host so that a central controller can ask it for
system metrics and have it perform HTTP requests written as `curl` command
lines. Every endpoint except the health check requires a shared secure key.

## Installation

```
pip install .
```

## Running

```
checkin-agent                      # start the API server
checkin-agent serve                # same, as an explicit subcommand
checkin-agent serve --config /etc/checkin/agent_config.json
checkin-agent --version            # print version information
checkin-agent --regenerate-key     # write a fresh secure key to the config
```

Options may also be written with a single dash (`-config`, `-version`, ...).
The server runs until it receives SIGINT or SIGTERM. The command exits with
status 1 and logs the error if an action fails.

On Linux the agent can register itself as a systemd unit
(`checkin-agent.service` in `/etc/systemd/system`). Installing and
uninstalling need root:

```
checkin-agent --install-service
checkin-agent --uninstall-service
checkin-agent --service-status     # prints `systemctl status` output
```

## Configuration

The configuration file defaults to `./agent_config.json`. If it does not exist
it is created with a random 64-character hex key and port 8080, and the path
and key are printed:

```json
{
  "secure_key": "placeholder",
  "port": 8080
}
```

The key must be non-empty and the port must lie between 1 and 65535;
otherwise `checkin_agent.config.ConfigError` is raised.

## API

Responses are JSON of the form
`{"success": bool, "message": "...", "data": ...}`; an empty `message` and an
absent `data` are left out.

| Endpoint              | Auth | Description                                  |
|-----------------------|------|----------------------------------------------|
| `/api/health`         | no   | Liveness check                               |
| `/api/system/info`    | yes  | Memory (MB and %) and CPU usage (%)          |
| `/api/task/execute`   | yes  | POST `{"type": "1", "command": "curl ..."}`  |

The key is read from the `X-Secure-Key` header; for POST requests without the
header it is taken from a `secure_key` form field (body or query string) or,
with `Content-Type: application/json`, from a `secure_key` field of the JSON
body. A wrong key gives status 401. Unknown paths give 404.

Task type `1` runs a `curl` command line as an HTTP request and returns the
response body, whatever the response status. It understands
`-X/--request`, `-H/--header`,
`-d/--data/--data-ascii/--data-binary/--data-raw` (which switch a GET to
POST) and `-k/--insecure`; other options are ignored. Commands must begin
with `curl` and may not contain `;`.

## What it does not do

Task types `2` (Node.js) and `3` (Python) are reserved: the agent answers them
with `success: false` and does not run anything. Only the curl-style task is
carried out, and it never starts a `curl` process; the request is made by the
agent itself.

## Library use

```python
from checkin_agent.config import load_config
from checkin_agent.curl import parse_curl_command
from checkin_agent.server import AgentServer
from checkin_agent.sysinfo import get_cpu_usage, get_memory_info

config = load_config("agent_config.json")
request = parse_curl_command("curl -X PUT -d a=1 https://example.com/api")
print(request.method, request.headers)   # PUT {}

server = AgentServer(config)
status, headers, body = server.dispatch("GET", "/api/health", {}, b"")

total_bytes, used_bytes = get_memory_info()
cpu_percent = get_cpu_usage()
```

`AgentServer.start()` serves on the configured port until `stop()` is called.