from dataclasses import replace

import pytest

from outboundlb.config import Config, ConfigError, load_from_file, parse_duration

IP = ["192.168.1.1"]


def write(tmp_path, name, content):
    path = tmp_path / name
    path.write_text(content, encoding="utf-8")
    return path


def test_default_config():
    cfg = Config()
    assert cfg.port == 3128
    assert cfg.metrics_port == 9090
    assert cfg.timeout == 30.0
    assert cfg.max_conns_per_ip == 100
    assert cfg.max_conns_total == 1000
    assert cfg.log_level == "info"
    assert cfg.log_format == "json"
    assert cfg.history_window == 300.0
    assert cfg.history_max_total_entries == 100000
    assert cfg.health_check_target == "1.1.1.1:443"


@pytest.mark.parametrize(
    "changes, valid",
    [
        ({"ips": IP}, True),
        ({}, False),
        ({"ips": ["invalid"]}, False),
        ({"ips": IP, "port": 0}, False),
        ({"ips": IP, "port": 70000}, False),
        ({"ips": IP, "port": 3128, "metrics_port": 3128}, False),
        ({"ips": IP, "auth": "nocolon"}, False),
        ({"ips": IP, "auth": "user:password"}, True),
        ({"ips": IP, "timeout": 0}, False),
        ({"ips": IP, "idle_timeout": 0}, False),
        ({"ips": IP, "max_conns_per_ip": 0}, False),
        ({"ips": IP, "max_conns_total": 0}, False),
        ({"ips": IP, "history_window": 0}, False),
        ({"ips": IP, "history_size": 0}, False),
        ({"ips": IP, "log_level": "invalid"}, False),
        ({"ips": IP, "log_format": "invalid"}, False),
    ],
)
def test_validate(changes, valid):
    cfg = replace(Config(), **changes)
    if valid:
        assert cfg.validate() is None
    else:
        with pytest.raises(ConfigError):
            cfg.validate()


def test_validate_messages():
    with pytest.raises(ConfigError, match="at least one outbound IP"):
        Config().validate()
    with pytest.raises(ConfigError, match="invalid IP address: nope"):
        Config(ips=["nope"]).validate()
    with pytest.raises(ConfigError, match="must be different"):
        Config(ips=IP, metrics_port=3128).validate()


@pytest.mark.parametrize("level", ["trace", "debug", "info", "warn", "error"])
def test_validate_all_log_levels(level):
    assert Config(ips=["127.0.0.1"], log_level=level).validate() is None


@pytest.mark.parametrize("fmt", ["json", "text"])
def test_validate_all_log_formats(fmt):
    assert Config(ips=["127.0.0.1"], log_format=fmt).validate() is None


@pytest.mark.parametrize(
    "ips",
    [
        ["10.0.0.1", "10.0.0.2", "10.0.0.3", "192.168.1.1"],
        ["::1", "2001:db8::1"],
        ["192.168.1.1", "::1"],
    ],
)
def test_validate_ip_sets(ips):
    assert Config(ips=ips).validate() is None


def test_validate_rejects_zone_id():
    with pytest.raises(ConfigError):
        Config(ips=["fe80::1%eth0"]).validate()


@pytest.mark.parametrize("port", [0, 70000])
def test_validate_metrics_ports(port):
    with pytest.raises(ConfigError, match="invalid metrics port"):
        Config(ips=["127.0.0.1"], metrics_port=port).validate()


@pytest.mark.parametrize(
    "auth, expected",
    [
        ("", None),
        ("user:password", ("user", "password")),
        ("user:a:b", ("user", "a:b")),
        ("nocolon", None),
    ],
)
def test_auth_credentials(auth, expected):
    assert Config(auth=auth).auth_credentials() == expected


@pytest.mark.parametrize(
    "text, seconds",
    [
        ("0", 0.0),
        ("60s", 60.0),
        ("300ms", 0.3),
        ("10m", 600.0),
        ("1h30m", 5400.0),
        ("1.5h", 5400.0),
        ("-2s", -2.0),
        ("100us", 0.0001),
        ("5ns", 5e-9),
    ],
)
def test_parse_duration(text, seconds):
    assert parse_duration(text) == pytest.approx(seconds)


@pytest.mark.parametrize("text", ["", "5", "abc", "1x", "s", ".s", "1h 30m"])
def test_parse_duration_invalid(text):
    with pytest.raises(ConfigError):
        parse_duration(text)


def test_load_from_file(tmp_path):
    path = write(
        tmp_path,
        "config.yml",
        """
ips:
  - 192.168.1.1
  - 192.168.1.2
port: 8080
metrics_port: 9091
auth: "testuser:password"
timeout: 60s
log_level: debug
""",
    )
    cfg = load_from_file(path)
    assert cfg.ips == ["192.168.1.1", "192.168.1.2"]
    assert cfg.port == 8080
    assert cfg.metrics_port == 9091
    assert cfg.auth == "testuser:password"
    assert cfg.timeout == 60.0
    assert cfg.log_level == "debug"


def test_load_from_file_not_found(tmp_path):
    with pytest.raises(ConfigError, match="reading config file"):
        load_from_file(tmp_path / "nonexistent" / "config.yml")


def test_load_from_file_invalid_yaml(tmp_path):
    path = write(tmp_path, "invalid.yml", "invalid: yaml: content:")
    with pytest.raises(ConfigError, match="parsing config file"):
        load_from_file(path)


def test_load_from_file_all_fields(tmp_path):
    path = write(
        tmp_path,
        "full_config.yml",
        """
ips:
  - 10.0.0.1
  - 10.0.0.2
  - 10.0.0.3
port: 8888
metrics_port: 9999
auth: "admin:password"
timeout: 45s
idle_timeout: 90s
max_conns_per_ip: 50
max_conns_total: 500
history_window: 10m
history_size: 200
log_level: debug
log_format: text
""",
    )
    cfg = load_from_file(path)
    assert len(cfg.ips) == 3
    assert cfg.port == 8888
    assert cfg.metrics_port == 9999
    assert cfg.auth == "admin:password"
    assert cfg.timeout == 45.0
    assert cfg.idle_timeout == 90.0
    assert cfg.max_conns_per_ip == 50
    assert cfg.max_conns_total == 500
    assert cfg.history_window == 600.0
    assert cfg.history_size == 200
    assert cfg.log_level == "debug"
    assert cfg.log_format == "text"


def test_load_from_file_minimal(tmp_path):
    cfg = load_from_file(write(tmp_path, "minimal.yml", "ips:\n  - 127.0.0.1\n"))
    assert cfg.ips == ["127.0.0.1"]
    assert cfg.port == 3128
    assert cfg.log_level == "info"


def test_load_from_file_empty(tmp_path):
    cfg = load_from_file(write(tmp_path, "empty.yml", ""))
    assert cfg == Config()


def test_load_from_file_extra_fields(tmp_path):
    path = write(
        tmp_path,
        "extra.yml",
        """
circuit_breaker_enabled: true
cb_timeout: 1m
health_check_type: http
health_check_target: http://example.com/health
tcp_keepalive: 15s
unknown_key: ignored
""",
    )
    cfg = load_from_file(path)
    assert cfg.circuit_breaker_enabled is True
    assert cfg.cb_timeout == 60.0
    assert cfg.health_check_type == "http"
    assert cfg.health_check_target == "http://example.com/health"
    assert cfg.tcp_keepalive == 15.0


def test_load_from_file_integer_duration_is_nanoseconds(tmp_path):
    cfg = load_from_file(write(tmp_path, "ns.yml", "timeout: 2000000000\n"))
    assert cfg.timeout == pytest.approx(2.0)


def test_load_from_file_wrong_type(tmp_path):
    with pytest.raises(ConfigError):
        load_from_file(write(tmp_path, "bad.yml", "port: abc\n"))


def test_load_from_file_bad_duration(tmp_path):
    with pytest.raises(ConfigError):
        load_from_file(write(tmp_path, "bad.yml", "timeout: soon\n"))


def test_load_from_file_not_a_mapping(tmp_path):
    with pytest.raises(ConfigError):
        load_from_file(write(tmp_path, "list.yml", "- a\n- b\n"))


def test_loaded_file_validates(tmp_path):
    cfg = load_from_file(write(tmp_path, "ok.yml", "ips: [10.0.0.1]\nport: 8080\n"))
    assert cfg.validate() is None
    assert cfg.port == 8080