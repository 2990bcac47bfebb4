"""
Capability interfaces the provider consumes.

``client.IncusClient`` and ``simplestreams.SimpleStreamsClient`` are the
production implementations; ``memory.InMemoryServer`` implements both for
tests.
"""

from typing import Dict, List, Optional, Protocol, runtime_checkable

from garm_provider_incus.models import Image, ImageAliasEntry, InstanceFull


@runtime_checkable
class Operation(Protocol):
    """Handle on an asynchronous endpoint operation."""

    id: str

    def wait(self, timeout: Optional[float] = None, cancel=None) -> dict:
        """
        Block until the operation reaches a terminal state.

        A ``None`` or non-positive timeout waits forever. ``cancel`` is a
        ``threading.Event``; setting it aborts the wait with
        ``OperationCancelledError``. A failed operation raises
        ``AsyncOperationError``.
        """
        ...


@runtime_checkable
class ImageServer(Protocol):
    def get_image_alias_architectures(self, image_type: str, name: str) -> Dict[str, ImageAliasEntry]:
        ...

    def get_image(self, fingerprint: str) -> Image:
        ...


@runtime_checkable
class InstanceServer(ImageServer, Protocol):
    def get_profile_names(self) -> List[str]:
        ...

    def create_instance(self, body: dict) -> Operation:
        ...

    def get_instances_full(self, instance_type: str = "") -> List[InstanceFull]:
        ...

    def get_instance_full(self, name: str) -> InstanceFull:
        ...

    def update_instance_state(self, name: str, state: dict) -> Operation:
        ...

    def delete_instance(self, name: str) -> Operation:
        ...
