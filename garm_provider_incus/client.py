"""
Incus/LXD REST client used as the production endpoint.

Supports both local (Unix socket) and remote (HTTPS with client
certificate) connections. Every call raises on failure:

- ``TransportError`` when the endpoint cannot be reached or the body is not JSON
- ``NotFoundError`` for HTTP 404
- ``EndpointError`` for any other error envelope
- ``AsyncOperationError`` when a background operation fails

:depends: requests
"""

import json
import logging
import os
import socket
import time
from urllib.parse import quote, unquote, urljoin

import requests
from requests.adapters import HTTPAdapter
from urllib3.connection import HTTPConnection
from urllib3.connectionpool import HTTPConnectionPool

from garm_provider_incus.errors import (
    AsyncOperationError,
    ConfigurationError,
    EndpointError,
    NotFoundError,
    OperationCancelledError,
    TransportError,
)
from garm_provider_incus.models import Image, ImageAliasEntry, InstanceFull

log = logging.getLogger(__name__)

INCUS_SOCKET_PATH = "/var/lib/incus/unix.socket"

REQUEST_TIMEOUT = 30

# Operation status codes
OPERATION_RUNNING = (100, 101, 103, 104, 105, 106)
OPERATION_SUCCESS = 200
OPERATION_FAILURE = (400, 401)


# ==============================================================
# UNIX SOCKET BACKEND
# ==============================================================

class UnixHTTPConnection(HTTPConnection):
    """
    HTTPConnection over Unix socket.
    """

    def __init__(self, unix_socket=INCUS_SOCKET_PATH, **kwargs):
        # host/port are dummy values, used only for format
        super().__init__("localhost", **kwargs)
        self.unix_socket = unix_socket

    def connect(self):
        self.sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self.sock.settimeout(self.timeout if isinstance(self.timeout, (int, float)) else None)
        self.sock.connect(self.unix_socket)


class UnixHTTPConnectionPool(HTTPConnectionPool):
    """
    Connection pool returning UnixHTTPConnection.
    """

    ConnectionCls = UnixHTTPConnection

    def __init__(self, socket_path=INCUS_SOCKET_PATH, **kwargs):
        super().__init__("localhost", **kwargs)
        self.socket_path = socket_path

    def _new_conn(self):
        return self.ConnectionCls(unix_socket=self.socket_path)


class UnixSocketPoolManager:
    """
    Minimal PoolManager-compatible object for HTTPAdapter.

    HTTPAdapter only needs connection_from_host()/connection_from_url();
    both return a pool bound to the socket.
    """

    def __init__(self, socket_path=INCUS_SOCKET_PATH):
        self.socket_path = socket_path

    def connection_from_host(self, host, port=None, scheme="http", pool_kwargs=None):
        return UnixHTTPConnectionPool(self.socket_path)

    def connection_from_url(self, url, pool_kwargs=None):
        return UnixHTTPConnectionPool(self.socket_path)

    def clear(self):
        pass


class UnixHTTPAdapter(HTTPAdapter):
    """
    Requests adapter for Incus via unix socket.
    """

    def __init__(self, socket_path=INCUS_SOCKET_PATH, **kwargs):
        self.socket_path = socket_path
        super().__init__(**kwargs)

    def init_poolmanager(self, *args, **kwargs):
        self.poolmanager = UnixSocketPoolManager(self.socket_path)

    def get_connection_with_tls_context(self, request, verify, proxies=None, cert=None):
        return self.poolmanager.connection_from_url(request.url)

    def get_connection(self, url, proxies=None):
        return self.poolmanager.connection_from_url(url)

    def proxy_manager_for(self, *args, **kwargs):
        # proxies are not applicable for unix socket
        return None

    def request_url(self, request, proxies):
        # Transport is AF_UNIX, the URL only carries the path
        return request.path_url


# ==============================================================
# ASYNC OPERATIONS
# ==============================================================

class IncusOperation:
    """
    Background operation returned by create, state change and delete.

    Incus operation states:
      100 - Operation created
      101 - Started
      103 - Running
      104 - Cancelling
      105 - Pending
      106 - Starting
      200 - Success
      400 - Failure
      401 - Cancelled
    """

    def __init__(self, client, url, metadata=None, interval=1):
        self._client = client
        self.url = url
        self.id = url.rstrip("/").rsplit("/", 1)[-1]
        self.metadata = metadata or {}
        self.interval = interval

    def refresh(self):
        result = self._client._request("GET", f"/operations/{quote(self.id)}")
        self.metadata = result.get("metadata") or {}
        return self.metadata

    def wait(self, timeout=None, cancel=None):
        deadline = None
        if timeout is not None and timeout > 0:
            deadline = time.monotonic() + timeout

        op = self.metadata or self.refresh()
        while True:
            if cancel is not None and cancel.is_set():
                raise OperationCancelledError(f"cancelled while waiting for operation {self.id}")

            status_code = op.get("status_code")

            if status_code == OPERATION_SUCCESS:
                return op

            if status_code in OPERATION_FAILURE:
                raise AsyncOperationError(op.get("err") or "Operation failed", status_code=status_code)

            if status_code not in OPERATION_RUNNING:
                raise AsyncOperationError(f"Unexpected status_code: {status_code}", status_code=status_code)

            if deadline is not None and time.monotonic() > deadline:
                raise AsyncOperationError(f"Timeout waiting for operation {self.id} to finish")

            if cancel is not None:
                if cancel.wait(self.interval):
                    raise OperationCancelledError(f"cancelled while waiting for operation {self.id}")
            else:
                time.sleep(self.interval)

            op = self.refresh()


# ==============================================================
# CLIENT
# ==============================================================

class IncusClient:
    """
    Production endpoint adapter.

    :param config: Validated ProviderConfig
    :param session: Optional pre-built requests session (used by tests)
    """

    def __init__(self, config, session=None):
        self.config = config
        self.session = session or self._create_session()
        self.base_url = self._get_base_url()

    def _create_session(self):
        session = requests.Session()

        # ============================================
        # LOCAL UNIX SOCKET
        # ============================================
        if self.config.unix_socket_path:
            adapter = UnixHTTPAdapter(self.config.unix_socket_path)

            # Disable TLS/proxy inheritance from environment
            session.verify = False
            session.cert = None
            session.trust_env = False

            session.mount("http://", adapter)
            session.mount("https://", adapter)
            return session

        # ============================================
        # REMOTE HTTPS
        # ============================================
        session.cert = (self.config.client_certificate, self.config.client_key)
        if self.config.tls_server_certificate:
            session.verify = self.config.tls_server_certificate
        elif self.config.tls_ca:
            session.verify = self.config.tls_ca
        else:
            session.verify = True
        return session

    def _get_base_url(self):
        if self.config.unix_socket_path:
            # host is dummy, only path /1.0 matters
            return "http://localhost/1.0"

        if not self.config.url:
            raise ConfigurationError("no URL or UnixSocket specified")
        return self.config.url.rstrip("/") + "/1.0"

    # ==========================================================
    # REQUEST API
    # ==========================================================

    def _request(self, method, endpoint, data=None, params=None):
        if endpoint:
            url = urljoin(self.base_url + "/", endpoint.lstrip("/"))
        else:
            url = self.base_url

        params = dict(params or {})
        if self.config.project_name:
            params.setdefault("project", self.config.project_name)

        try:
            response = self.session.request(
                method,
                url,
                json=data,
                params=params,
                timeout=REQUEST_TIMEOUT,
            )
        except requests.exceptions.RequestException as e:
            raise TransportError(f"{method} {url}: {e}") from e

        try:
            body = response.json()
        except ValueError as e:
            if response.status_code >= 400:
                body = {}
            else:
                raise TransportError(f"{method} {url}: malformed response: {e}") from e

        if response.status_code >= 400 or body.get("type") == "error":
            self._raise_for_error(method, url, data, params, response, body)

        return body

    def _raise_for_error(self, method, url, data, params, response, body):
        status_code = body.get("error_code") or response.status_code
        message = body.get("error") or response.reason or f"HTTP {status_code}"

        # Detailed logging for server errors (5xx)
        if 500 <= status_code < 600:
            log.error("=" * 60)
            log.error("Incus API Server Error (HTTP %d)", status_code)
            log.error("=" * 60)
            log.error("Request URL: %s %s", method, url)
            log.error("Request params: %s", params)
            log.error("Request data (JSON): %s", json.dumps(data, indent=2) if data else "None")
            if body:
                log.error("Response body: %s", json.dumps(body, indent=2))
            else:
                log.error("Response body (raw): %s", response.text)
            log.error("=" * 60)

        if status_code == 404:
            raise NotFoundError(message)
        raise EndpointError(message, status_code=status_code)

    def _async_request(self, method, endpoint, data=None):
        result = self._request(method, endpoint, data=data)
        operation = result.get("operation")
        if result.get("type") != "async" or not operation:
            raise TransportError(f"{method} {endpoint}: expected an async response")
        return IncusOperation(self, operation, result.get("metadata"))

    # ==========================================================
    # IMAGES
    # ==========================================================

    def get_image(self, fingerprint):
        result = self._request("GET", f"/images/{quote(fingerprint)}")
        return image_from_api(result.get("metadata") or {})

    def get_image_alias_architectures(self, image_type, name):
        params = {"type": image_type} if image_type else None
        result = self._request("GET", f"/images/aliases/{quote(name, safe='')}", params=params)
        alias = result.get("metadata") or {}
        if image_type and alias.get("type") and alias["type"] != image_type:
            raise NotFoundError(f"Image alias {name} of type {image_type} not found")

        entry = ImageAliasEntry(
            name=alias.get("name", name),
            type=alias.get("type", ""),
            target=alias.get("target", ""),
            description=alias.get("description", ""),
        )
        image = self.get_image(entry.target)
        return {image.architecture: entry}

    # ==========================================================
    # PROFILES
    # ==========================================================

    def get_profile_names(self):
        result = self._request("GET", "/profiles", params={"recursion": 0})
        return [unquote(url.rstrip("/").rsplit("/", 1)[-1]) for url in result.get("metadata") or []]

    # ==========================================================
    # INSTANCES
    # ==========================================================

    def create_instance(self, body):
        return self._async_request("POST", "/instances", data=body)

    def get_instances_full(self, instance_type=""):
        params = {"recursion": 2}
        if instance_type:
            params["instance-type"] = instance_type
        result = self._request("GET", "/instances", params=params)
        return [InstanceFull.from_api(item) for item in result.get("metadata") or []]

    def get_instance_full(self, name):
        result = self._request("GET", f"/instances/{quote(name)}", params={"recursion": 1})
        return InstanceFull.from_api(result.get("metadata") or {})

    def update_instance_state(self, name, state):
        return self._async_request("PUT", f"/instances/{quote(name)}/state", data=state)

    def delete_instance(self, name):
        return self._async_request("DELETE", f"/instances/{quote(name)}")


def image_from_api(metadata):
    return Image(
        fingerprint=metadata.get("fingerprint", ""),
        architecture=metadata.get("architecture", ""),
        type=metadata.get("type", ""),
        properties=dict(metadata.get("properties") or {}),
        aliases=[a.get("name", "") for a in metadata.get("aliases") or []],
    )


def _check_readable(label, path):
    try:
        with open(path, "rb"):
            pass
    except OSError as e:
        raise ConfigurationError(f"reading {label} {path}: {e}") from e


def client_from_config(cfg):
    """
    Build an IncusClient, checking that all TLS material is readable first.

    :param cfg: ProviderConfig
    :return: IncusClient
    """
    if cfg is None:
        raise ConfigurationError("no Incus configuration found")

    if cfg.unix_socket_path:
        return IncusClient(cfg)

    if not cfg.url:
        raise ConfigurationError("no URL or UnixSocket specified")

    for label, path in (
        ("TLSServerCert", cfg.tls_server_certificate),
        ("TLSCA", cfg.tls_ca),
        ("ClientCertificate", cfg.client_certificate),
        ("ClientKey", cfg.client_key),
    ):
        if path:
            _check_readable(label, os.path.expanduser(path))

    return IncusClient(cfg)
