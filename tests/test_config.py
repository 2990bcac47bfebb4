import pytest

from garm_provider_incus.config import ProviderConfig, RemoteImageSource, deep_merge, load_config
from garm_provider_incus.errors import ConfigurationError

REMOTES = """
[image_remotes.ubuntu]
addr = "https://cloud-images.ubuntu.com/releases"
public = true
protocol = "simplestreams"
skip_verify = false

[image_remotes.ubuntu_daily]
addr = "https://cloud-images.ubuntu.com/daily"
"""


@pytest.fixture
def socket_path(tmp_path):
    path = tmp_path / "unix.socket"
    path.touch()
    return path


@pytest.fixture
def tls_files(tmp_path):
    files = {}
    for name in ("client.crt", "client.key", "server.crt"):
        path = tmp_path / name
        path.write_text("-----BEGIN CERTIFICATE-----\n")
        files[name] = path
    return files


def _write(tmp_path, text):
    path = tmp_path / "incus.toml"
    path.write_text(text)
    return path


def test_load_unix_socket_config(tmp_path, socket_path):
    path = _write(
        tmp_path,
        f'unix_socket_path = "{socket_path}"\n'
        'project_name = "garm"\n'
        "include_default_profile = true\n"
        'instance_type = "container"\n' + REMOTES,
    )
    cfg = load_config(path)

    assert cfg.unix_socket_path == str(socket_path)
    assert cfg.project_name == "garm"
    assert cfg.include_default_profile is True
    assert cfg.secure_boot is False
    assert cfg.get_instance_type() == "container"
    assert sorted(cfg.image_remotes) == ["ubuntu", "ubuntu_daily"]

    daily = cfg.image_remotes["ubuntu_daily"]
    assert daily == RemoteImageSource(
        name="ubuntu_daily",
        address="https://cloud-images.ubuntu.com/daily",
        public=False,
        protocol="simplestreams",
        skip_verify=False,
    )


def test_load_https_config(tmp_path, tls_files):
    path = _write(
        tmp_path,
        'url = "https://incus.example.com:8443"\n'
        f'client_certificate = "{tls_files["client.crt"]}"\n'
        f'client_key = "{tls_files["client.key"]}"\n'
        f'tls_server_certificate = "{tls_files["server.crt"]}"\n'
        "secure_boot = true\n",
    )
    cfg = load_config(path)

    assert cfg.url == "https://incus.example.com:8443"
    assert cfg.secure_boot is True
    assert cfg.get_instance_type() == "virtual-machine"
    assert cfg.image_remotes == {}


def test_missing_file(tmp_path):
    with pytest.raises(ConfigurationError) as exc:
        load_config(tmp_path / "missing.toml")
    assert "error reading config" in str(exc.value)


def test_invalid_toml(tmp_path):
    path = _write(tmp_path, "unix_socket_path = \n")
    with pytest.raises(ConfigurationError) as exc:
        load_config(path)
    assert "error decoding config" in str(exc.value)


@pytest.mark.parametrize(
    "data, message",
    [
        ({}, "unix_socket_path or url must be specified"),
        ({"unix_socket_path": "/does/not/exist.socket"}, "could not access unix socket /does/not/exist.socket"),
        ({"url": "http://incus.example.com:8443"}, "url http://incus.example.com:8443 must be https"),
        ({"url": "https://incus.example.com:8443"}, "client_certificate and client_key are mandatory"),
        (
            {
                "url": "https://incus.example.com:8443",
                "client_certificate": "/does/not/exist.crt",
                "client_key": "/does/not/exist.key",
            },
            "failed to access client_certificate /does/not/exist.crt",
        ),
    ],
)
def test_validate_endpoint(data, message):
    with pytest.raises(ConfigurationError) as exc:
        ProviderConfig.from_dict(data).validate()
    assert message in str(exc.value)


@pytest.mark.parametrize(
    "remote, message",
    [
        ({"addr": "https://images.example.com", "protocol": "incus"}, "invalid remote protocol incus"),
        ({"addr": ""}, "missing address"),
        ({"addr": "ftp://images.example.com"}, "address ftp://images.example.com must be http or https"),
    ],
)
def test_validate_remote(socket_path, remote, message):
    cfg = ProviderConfig.from_dict({"unix_socket_path": str(socket_path), "image_remotes": {"broken": remote}})
    with pytest.raises(ConfigurationError) as exc:
        cfg.validate()
    assert "remote broken is invalid" in str(exc.value)
    assert message in str(exc.value)


def test_unix_socket_ignores_https_settings(socket_path):
    cfg = ProviderConfig.from_dict({"unix_socket_path": str(socket_path), "url": "http://not-checked"})
    cfg.validate()


@pytest.mark.parametrize(
    "value, expected",
    [("container", "container"), ("virtual-machine", "virtual-machine"), ("vm", "virtual-machine"), ("", "virtual-machine")],
)
def test_instance_type(value, expected):
    assert ProviderConfig.from_dict({"instance_type": value}).get_instance_type() == expected


def test_deep_merge():
    base = {"a": 1, "nested": {"x": 1, "y": 2}}
    assert deep_merge(base, {"nested": {"y": 3}, "b": 2}) == {"a": 1, "b": 2, "nested": {"x": 1, "y": 3}}


@pytest.mark.parametrize(
    "data, key",
    [
        ({"secure_boot": "false"}, "secure_boot"),
        ({"include_default_profile": 1}, "include_default_profile"),
        ({"image_remotes": {"ubuntu": {"public": "true"}}}, "image_remotes.ubuntu.public"),
        ({"image_remotes": {"ubuntu": {"skip_verify": "no"}}}, "image_remotes.ubuntu.skip_verify"),
    ],
)
def test_boolean_settings_reject_strings(data, key):
    with pytest.raises(ConfigurationError) as exc:
        ProviderConfig.from_dict(data)
    assert f"{key} must be a boolean" in str(exc.value)


def test_load_rejects_quoted_boolean(tmp_path, socket_path):
    path = _write(tmp_path, f'unix_socket_path = "{socket_path}"\nsecure_boot = "false"\n')
    with pytest.raises(ConfigurationError) as exc:
        load_config(path)
    assert "secure_boot must be a boolean" in str(exc.value)
