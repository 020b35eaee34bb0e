# veld

Building blocks for running local development services under friendly
hostnames. The package keeps track of runs and their nodes in JSON files,
expands URL templates, and provides two long-running services:

- **`veld-helper`**: a privileged helper that manages DNS entries (a dnsmasq
  include file and a fenced `# BEGIN veld-managed` / `# END veld-managed`
  section of `/etc/hosts`) and drives the Caddy reverse proxy through its
  admin API at `http://localhost:2019`.
- **`veld-daemon`**: a user-level daemon that scans running runs every five
  seconds, marks a run as stopped when one of its processes has died, runs a
  garbage collection pass every ten minutes, and sends state-change events to
  connected clients.

## Installation

```
pip install .
```

For the test suite:

```
pip install ".[test]"
pytest
```

## Running the services

Start the helper, usually as root so it can write `/etc/hosts`:

```
veld-helper --socket-path /run/veld-helper.sock
```

Without `--socket-path` it listens on `/var/run/veld-helper.sock` on macOS and
`/run/veld-helper.sock` elsewhere. The socket is made world-accessible so
regular users can connect. The helper writes its dnsmasq file to
`<user data dir>/veld/dnsmasq.d/veld.conf`, and runs the `caddy` found on
`PATH` (or `<user data dir>/veld/bin/caddy`) with its storage in
`<user data dir>/veld/caddy`.

Start the daemon as your own user:

```
veld-daemon --socket-path ~/.veld/daemon.sock
```

`~/.veld/daemon.sock` is also the default. The daemon talks to the helper on
the helper's default socket, and reads the global registry from its default
location. It stops on SIGINT or SIGTERM and removes its socket.

Both commands accept `--version`; the daemon also accepts `--help` / `-h` and
`-V`. An unknown argument prints an error and exits with status 1.

## Helper protocol

The helper reads one JSON object per line and answers each with one JSON line:

```
{"command": "add_host", "args": {"hostname": "app.dev", "ip": "127.0.0.1"}}
{"ok":true}
```

| Command        | Arguments                                                                 |
|----------------|---------------------------------------------------------------------------|
| `add_host`     | `hostname`, optional `ip` (default `127.0.0.1`)                           |
| `remove_host`  | `hostname`                                                                |
| `add_route`    | `route_id`, `hostname`, `upstream`; optionally all of `feedback_upstream`, `run_name`, `project_root` |
| `remove_route` | `route_id`                                                                |
| `reload_dns`   | none: flushes the macOS DNS cache, or restarts dnsmasq with systemctl     |
| `caddy_start`, `caddy_stop`, `caddy_reload` | none                                         |
| `status`       | none: returns `{"caddy": "running"/"stopped", "dns_entries": N}`          |

Hostnames that are `localhost` or end in `.localhost` are remembered but never
written to disk. Failures come back as `{"ok":false,"error":"..."}`.

When `add_route` gets the three feedback fields, the route sends
`/__veld__/*` to `feedback_upstream` with `X-Veld-Run` and `X-Veld-Project`
headers, and injects `<script src="/__veld__/feedback/script.js">` before
`</body>` in proxied pages.

From Python, `veld.protocol.HelperClient` sends commands (`request`,
`add_host`, `remove_host`, `remove_route`) and raises
`veld.protocol.ProtocolError` when the helper reports a failure.

## Daemon events

Clients connecting to the daemon socket receive newline-delimited JSON. The
first line is `{"event": "connected", "daemon_version": ..., "timestamp": ...}`;
after that, each run stopped by the health scan produces a
`{"event": "status_change", "run": ..., "project": ..., "old_status": "running",
"new_status": "stopped", "timestamp": ...}` line.

Garbage collection (`veld.gc.run_gc`) marks runs whose processes are all gone
as stopped and removes their routes and DNS entries, deletes stopped or failed
runs older than 72 hours, and deletes files in `<project>/.veld/logs/` older
than 7 days. It returns a `GcSummary` with the counts.

## Library use

```python
from veld.urls import build_url_template_values, evaluate_url_template
from veld.state import ProjectState, RunState

values = build_url_template_values(
    "Frontend", "local", "swift-falcon", "My App", "feature/login", "", "dev", "laptop"
)
print(evaluate_url_template("{service}.{branch ?? run}.{project}.localhost", values))
# frontend.feature-login.my-app.localhost

state = ProjectState.load(".")
run = RunState.create("swift-falcon", "my-app")
state.runs[run.name] = run
state.save(".")
```

Other pieces:

- `veld.variables.interpolate` expands `${veld.*}` and `${nodes.*}` references
  from a `VariableContext`, raising `UnknownBuiltinError` or
  `UnresolvedVariableError`.
- `veld.urls.slugify`, `generate_run_name` and `resolve_url_template`
  (variant, then node, then project template).
- `veld.state.GlobalRegistry` keeps every project and its runs in
  `<user data dir>/veld/registry.json`; `load` and `save` accept another path.
- `veld.caddy.build_route_json` and `build_base_config` build the Caddy JSON;
  `CaddyManager` applies it. `veld.dns.rebuild_hosts_file` and
  `build_dnsmasq_content` produce the file contents `DnsManager` writes.

Project state is kept in `.veld/state.json` under the project root.

## What this package does not do

- There is no command to define, start or stop runs of a project: the state
  files and registry are read and updated, but nothing here launches the
  services of a run or performs their health checks.
- There is no feedback server. Routes can point `/__veld__/*` at one, but the
  package serves no overlay script and stores no feedback comments.
- `NodeState.sensitive_keys` is recorded, but output values are stored and
  returned as they are, neither encrypted on disk nor masked.