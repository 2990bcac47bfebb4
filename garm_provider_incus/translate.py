"""
Native instance snapshot -> canonical provider instance.

Everything here is pure: no endpoint calls, no exceptions for missing data.
"""

import logging

from garm_provider_incus.models import (
    IMAGE_OS_KEY,
    IMAGE_RELEASE_KEY,
    NATIVE_TO_CANONICAL_ARCH,
    OS_TYPE_KEY,
    Address,
    AddressType,
    InstanceStatus,
    OSType,
    ProviderInstance,
)

log = logging.getLogger(__name__)

LINUX_DISTROS = frozenset(
    [
        "linux",
        "ubuntu",
        "debian",
        "centos",
        "rhel",
        "redhat",
        "rocky",
        "rockylinux",
        "almalinux",
        "fedora",
        "opensuse",
        "suse",
        "sles",
        "alpine",
        "archlinux",
        "arch",
        "amazonlinux",
        "oracle",
        "gentoo",
        "devuan",
        "kali",
        "mint",
        "nixos",
        "voidlinux",
    ]
)

STATUS_MAP = {
    "running": InstanceStatus.RUNNING,
    "stopped": InstanceStatus.STOPPED,
    "error": InstanceStatus.ERROR,
}


def os_to_os_type(os_name):
    """``ubuntu`` -> ``linux``, ``windows`` -> ``windows``, anything else -> ``unknown``."""
    name = (os_name or "").strip().lower()
    if name == OSType.WINDOWS:
        return OSType.WINDOWS
    if name in LINUX_DISTROS:
        return OSType.LINUX
    return OSType.UNKNOWN


def canonical_arch(architecture):
    return NATIVE_TO_CANONICAL_ARCH.get(architecture, architecture)


def canonical_status(status):
    return STATUS_MAP.get((status or "").lower(), InstanceStatus.UNKNOWN)


def global_addresses(state):
    """Every global-scope address of every interface, in interface order."""
    addresses = []
    if state is None or not state.network:
        return addresses
    for iface_addresses in state.network.values():
        for addr in iface_addresses:
            if addr.scope != "global":
                continue
            addresses.append(Address(address=addr.address, type=AddressType.PUBLIC))
    return addresses


def instance_to_provider_instance(instance):
    """
    :param instance: InstanceFull snapshot
    :return: ProviderInstance
    """
    config = instance.expanded_config or {}

    image_os = config.get(IMAGE_OS_KEY, "")
    if image_os:
        os_type = os_to_os_type(image_os)
    else:
        log.debug("Instance %s has no %s, falling back to %s", instance.name, IMAGE_OS_KEY, OS_TYPE_KEY)
        os_type = os_to_os_type(config.get(OS_TYPE_KEY, ""))

    status = instance.state.status if instance.state is not None and instance.state.status else instance.status

    return ProviderInstance(
        provider_id=instance.name,
        name=instance.name,
        os_type=os_type,
        os_name=image_os,
        os_version=config.get(IMAGE_RELEASE_KEY, ""),
        os_arch=canonical_arch(instance.architecture),
        addresses=global_addresses(instance.state),
        status=canonical_status(status),
    )
