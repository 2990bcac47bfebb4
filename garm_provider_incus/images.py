"""
Image resolution: ``remote:name`` plus instance kind and architecture to a
fingerprint on one of the configured image remotes.
"""

import logging

from garm_provider_incus.errors import (
    ArchitectureNotFoundError,
    MissingRemoteError,
    NotFoundError,
    UnknownRemoteError,
)
from garm_provider_incus.models import InstanceSource, ResolvedImage
from garm_provider_incus.simplestreams import SimpleStreamsClient

log = logging.getLogger(__name__)


def parse_image_name(image_ref, remotes):
    """
    Split an image reference on its first colon and look up the remote.

    :param image_ref: ``remote:name``
    :param remotes: Remote catalog, keyed by name
    :return: (RemoteImageSource, bare image name)
    """
    if ":" not in image_ref:
        raise MissingRemoteError(f"image {image_ref} does not include a remote")

    remote_name, image_name = image_ref.split(":", 1)
    remote = remotes.get(remote_name)
    if remote is None:
        configured = ", ".join(sorted(remotes)) or "<none>"
        raise UnknownRemoteError(
            f"could not find {image_ref} in configured remotes: {configured}"
        )
    return remote, image_name


class ImageResolver:
    """
    :param remotes: Remote catalog (``ProviderConfig.image_remotes``)
    :param image_server_factory: Callable returning an ImageServer for a
        remote; defaults to a simplestreams client
    """

    def __init__(self, remotes, image_server_factory=None):
        self.remotes = remotes
        self.image_server_factory = image_server_factory or SimpleStreamsClient.for_remote

    def resolve(self, image_ref, image_type, arch):
        """
        :param image_ref: ``remote:name``
        :param image_type: ``container`` or ``virtual-machine``
        :param arch: Native architecture name (``x86_64``, ``aarch64``, ...)
        :return: ResolvedImage
        """
        remote, image_name = parse_image_name(image_ref, self.remotes)
        server = self.image_server_factory(remote)

        log.debug("Looking up %s (%s, %s) on remote %s", image_name, image_type, arch, remote.name)
        try:
            aliases = server.get_image_alias_architectures(image_type, image_name)
        except NotFoundError as e:
            raise ArchitectureNotFoundError(
                f"image {image_ref} of type {image_type} not found: {e}"
            ) from e

        entry = aliases.get(arch)
        if entry is None:
            available = ", ".join(sorted(aliases)) or "<none>"
            raise ArchitectureNotFoundError(
                f"image {image_ref} not found for architecture {arch} (available: {available})"
            )

        image = server.get_image(entry.target)
        log.info("Resolved %s for %s to fingerprint %s", image_ref, arch, image.fingerprint)
        return ResolvedImage(fingerprint=image.fingerprint, architecture=arch, remote=remote)


def instance_source(resolved):
    """
    Instance source descriptor pointing the endpoint at the resolved image.

    Besides ``type`` and ``fingerprint`` the source names the image remote
    (``mode=pull``, ``server``, ``protocol``) so the endpoint can pull an
    image it has not cached yet.
    """
    return InstanceSource(
        type="image",
        fingerprint=resolved.fingerprint,
        server=resolved.remote.address,
        protocol=resolved.remote.protocol,
    )
