# outboundlb

`outboundlb` holds the decision-making parts of a forward proxy that owns
several local IP addresses and spreads its outgoing connections across them.
For each destination host it remembers which source IP was used recently and
picks the least used one, so that no single address carries all the traffic
to a given site.

## What is in the package

- `outboundlb.balancer`: `LRUBalancer` (created with `new_balancer`) picks,
  for a host, the source IP with the fewest uses inside the recent history,
  breaking ties by the oldest last use; an IP never used for that host wins a
  tie. History is bounded by a time window (seconds) and a per-host size, and
  a background thread started with `start()` drops expired entries every 30
  seconds (`cleanup()` does it on demand). `select()` raises
  `NoAvailableIPsError` when no IP is left. `BalancerConfig` takes an optional
  limiter and health checker; when the health checker reports every IP as
  unhealthy, all IPs are used rather than none.
- `outboundlb.limiter`: `Limiter` caps concurrent connections per source IP
  and in total. `acquire()` raises `IPLimitReachedError` or
  `TotalLimitReachedError` (both `LimitReachedError`); `slot()` is a context
  manager that acquires and releases.
- `outboundlb.history`: `History` and `HostHistory`, the per-host usage
  records behind the balancer, with an optional cap on the total number of
  entries that evicts the oldest entry first.
- `outboundlb.checkers`: `TCPChecker` (opens a TCP connection to
  `host:port`) and `HTTPChecker` (a GET that passes on a 2xx or 3xx status,
  following up to 10 redirects), both bound to a given source IP. Failures
  raise `HealthCheckError`.
- `outboundlb.healthchecker`: `HealthChecker` runs a checker for every IP at
  a fixed interval in a background thread; `outboundlb.health_status` holds
  the per-IP states `healthy`, `unhealthy` and `recovering`.
- `outboundlb.circuitbreaker`: `CircuitBreaker`, a per-IP breaker with
  `closed`, `open` and `half-open` states.
- `outboundlb.config`: `Config` with its defaults, `load_from_file()` for
  YAML, `parse_duration()` and `Config.validate()` (raises `ConfigError`).
- `outboundlb.watcher`: `ConfigWatcher` reloads the YAML file when it changes.
- `outboundlb.cli`: the `outbound-lb` command.

## What it does not do

The package does not accept or forward any traffic. There is no proxy
listener and no metrics or readiness endpoint: `--port`, `--metrics-port`,
`--auth`, `--timeout`, `--idle-timeout` and the transport and circuit-breaker
settings are parsed and validated, but nothing uses them yet. The
`outbound-lb` command builds the limiter, balancer, health checker and
configuration watcher, then waits for signals until it is stopped.

## The command

```
outbound-lb --ips 192.0.2.10,192.0.2.11 --log-level debug --log-format text
```

At least one IP is required. The command runs until `SIGINT` or `SIGTERM`;
`SIGHUP` reloads the file given with `--config`. Logs go to standard error,
as JSON lines or as text.

Durations use forms such as `500ms`, `30s`, `5m` or `1h30m`.

| Flag | Default | Meaning |
| --- | --- | --- |
| `--ips` | (required) | comma-separated outbound IPs (IPv4 or IPv6) |
| `--port` | `3128` | proxy port, 1 to 65535 |
| `--metrics-port` | `9090` | metrics port, must differ from `--port` |
| `--auth` | none | basic auth credentials, user and password joined by a colon |
| `--timeout` | `30s` | connection timeout |
| `--idle-timeout` | `60s` | idle connection timeout |
| `--max-conns-per-ip` | `100` | concurrent connections per source IP |
| `--max-conns-total` | `1000` | concurrent connections overall |
| `--history-window` | `5m` | how far back usage history counts |
| `--history-size` | `100` | history entries considered per host |
| `--history-max-total-entries` | `100000` | total history entries |
| `--log-level` | `info` | `trace`, `debug`, `info`, `warn` or `error` |
| `--log-format` | `json` | `json` or `text` |
| `--config` | none | YAML configuration file |
| `--health-check-enabled` | `false` | turn on active health checks |
| `--health-check-type` | `tcp` | `http` selects `HTTPChecker`, anything else `TCPChecker` |
| `--health-check-target` | `1.1.1.1:443` | `host:port` for TCP, a URL for HTTP |
| `--health-check-interval` | `10s` | time between check rounds |
| `--health-check-timeout` | `5s` | timeout of one check |
| `--health-check-failure-threshold` | `3` | failures before an IP is unhealthy |
| `--health-check-success-threshold` | `2` | successes before it is healthy again |

`--tcp-keepalive`, `--idle-conn-timeout`, `--tls-handshake-timeout`,
`--expect-continue-timeout`, `--circuit-breaker-enabled`,
`--cb-failure-threshold`, `--cb-success-threshold` and `--cb-timeout` are
accepted as well. Boolean flags take an optional value (`true`, `false`,
`1`, `0`, ...).

Every flag except `--config` has an environment variable: the setting's name
in upper case with underscores, prefixed with `OUTBOUND_LB_`, for example
`OUTBOUND_LB_MAX_CONNS_PER_IP=50`. Empty or unparsable values are ignored.

Precedence: a flag given on the command line always wins. Without `--config`,
environment variables come next, then the defaults. With `--config`, the file
comes next, then the defaults; environment variables are not applied on top
of a file.

### YAML file

```yaml
ips:
  - 192.0.2.10
  - 192.0.2.11
port: 3128
metrics_port: 9090
max_conns_per_ip: 50
history_window: 10m
history_size: 200
log_level: debug
log_format: text
```

Keys are the setting names with underscores; missing keys keep their
defaults. Durations are strings such as `10m`, or integers in nanoseconds.

When the file changes (or on `SIGHUP`), the log level and format, the
connection limits and the history window and size are applied without a
restart. Changes to the IPs, ports, auth or timeout are logged as ignored.
A file whose reloadable settings are invalid is rejected with a
`ValidationError`, and the running configuration is kept.

## Using it as a library

```python
from outboundlb.balancer import BalancerConfig, NoAvailableIPsError, new_balancer
from outboundlb.config import load_from_file, parse_duration
from outboundlb.limiter import LimitReachedError, Limiter

ips = ["192.0.2.10", "192.0.2.11"]
limiter = Limiter(2, 10, ips)
balancer = new_balancer(BalancerConfig(ips=ips, history_window=parse_duration("5m"),
                                       limiter=limiter))

try:
    ip = balancer.select("example.com")
    with limiter.slot(ip):
        balancer.record("example.com", ip)
        ...  # open the outbound connection from `ip` here
except (NoAvailableIPsError, LimitReachedError):
    ...  # no address can take another connection

config = load_from_file("outbound-lb.yml")
config.validate()  # raises ConfigError on bad values
```

## Tests

Install the `test` extra and run `pytest` from the project directory.