"""
Read-only client for simplestreams image servers.

Only the subset needed to resolve an alias to a fingerprint is implemented:
the stream index, the product catalogs it references, and the per-version
items that carry the combined image hashes.
"""

import logging
from urllib.parse import urljoin

import requests

from garm_provider_incus.errors import NotFoundError, TransportError
from garm_provider_incus.models import Image, ImageAliasEntry, InstanceType

log = logging.getLogger(__name__)

INDEX_PATH = "streams/v1/index.json"

REQUEST_TIMEOUT = 30

# simplestreams (Debian) architecture names -> kernel architecture names
STREAMS_TO_NATIVE_ARCH = {
    "amd64": "x86_64",
    "arm64": "aarch64",
    "armhf": "armv7l",
    "i386": "i686",
    "ppc64el": "ppc64le",
    "s390x": "s390x",
    "riscv64": "riscv64",
}

# combined hash fields, in order of preference
CONTAINER_HASH_KEYS = ("combined_squashfs_sha256", "combined_rootxz_sha256", "combined_sha256")
VM_HASH_KEYS = ("combined_disk-kvm-img_sha256", "combined_uefi1_sha256")


class SimpleStreamsClient:
    """
    :param address: Base URL of the simplestreams server
    :param verify: TLS verification flag passed to requests
    """

    def __init__(self, address, verify=True, session=None):
        self.address = address.rstrip("/") + "/"
        self.session = session or requests.Session()
        self.session.verify = verify
        self._images = None

    @classmethod
    def for_remote(cls, remote):
        return cls(remote.address, verify=not remote.skip_verify)

    def _get_json(self, path):
        url = urljoin(self.address, path)
        try:
            response = self.session.get(url, timeout=REQUEST_TIMEOUT)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            raise TransportError(f"fetching {url}: {e}") from e
        except ValueError as e:
            raise TransportError(f"fetching {url}: malformed response: {e}") from e

    def _load(self):
        if self._images is not None:
            return self._images

        index = self._get_json(INDEX_PATH)
        images = []
        for name, entry in (index.get("index") or {}).items():
            if entry.get("datatype") != "image-downloads" or not entry.get("path"):
                continue
            log.debug("Reading simplestreams catalog %s (%s)", name, entry["path"])
            catalog = self._get_json(entry["path"])
            for product_name, product in (catalog.get("products") or {}).items():
                images.extend(parse_product(product_name, product))

        self._images = images
        return images

    def get_image_alias_architectures(self, image_type, name):
        aliases = {}
        for image in self._load():
            if image_type and image.type != image_type:
                continue
            if name in image.aliases:
                aliases[image.architecture] = ImageAliasEntry(
                    name=name,
                    type=image.type,
                    target=image.fingerprint,
                )
        if not aliases:
            raise NotFoundError(f"Image alias {name} of type {image_type or 'any'} not found on {self.address}")
        return aliases

    def get_image(self, fingerprint):
        for image in self._load():
            if image.fingerprint == fingerprint:
                return image
        raise NotFoundError(f"Image {fingerprint} not found on {self.address}")


def _combined_hash(items, keys):
    for item in items.values():
        if item.get("ftype") != "lxd.tar.xz":
            continue
        for key in keys:
            if item.get(key):
                return item[key]
    return None


def parse_product(product_name, product):
    """
    Turn one simplestreams product into Image records for its newest version.

    A product yields at most one container image and one VM image.
    """
    versions = product.get("versions") or {}
    if not versions:
        return []

    latest = versions[max(versions)]
    items = latest.get("items") or {}

    arch = product.get("arch", "")
    arch = STREAMS_TO_NATIVE_ARCH.get(arch, arch)
    aliases = [a.strip() for a in (product.get("aliases") or "").split(",") if a.strip()]
    properties = {
        "os": product.get("os", ""),
        "release": product.get("release", ""),
        "release_title": product.get("release_title", ""),
        "variant": product.get("variant", ""),
        "architecture": product.get("arch", ""),
    }

    images = []
    for image_type, keys in (
        (InstanceType.CONTAINER, CONTAINER_HASH_KEYS),
        (InstanceType.VIRTUAL_MACHINE, VM_HASH_KEYS),
    ):
        fingerprint = _combined_hash(items, keys)
        if not fingerprint:
            continue
        images.append(
            Image(
                fingerprint=fingerprint,
                architecture=arch,
                type=image_type,
                properties=dict(properties),
                aliases=list(aliases),
            )
        )

    if not images:
        log.debug("Skipping product %s: no usable image items", product_name)
    return images
