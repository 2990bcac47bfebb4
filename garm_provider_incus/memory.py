"""
In-memory endpoint implementing both InstanceServer and ImageServer.

It keeps images, profiles and instances in dictionaries, mimics the status
transitions and error messages of a real Incus server, and records every
call in ``calls`` so tests can assert on ordering. Failures can be injected
per method with :meth:`InMemoryServer.fail_next`.
"""

import copy
import logging

from garm_provider_incus.errors import (
    EndpointError,
    NotFoundError,
    OperationCancelledError,
)
from garm_provider_incus.models import (
    IMAGE_OS_KEY,
    IMAGE_RELEASE_KEY,
    Image,
    ImageAliasEntry,
    InstanceFull,
    InstanceState,
)

log = logging.getLogger(__name__)


class MemoryOperation:
    """Operation that is already finished; ``wait`` reports its outcome."""

    def __init__(self, op_id, error=None):
        self.id = op_id
        self.error = error
        self.waited = False

    def wait(self, timeout=None, cancel=None):
        self.waited = True
        if cancel is not None and cancel.is_set():
            raise OperationCancelledError(f"cancelled while waiting for operation {self.id}")
        if self.error is not None:
            raise self.error
        return {"id": self.id, "status_code": 200, "status": "Success"}


class InMemoryServer:
    def __init__(self, profiles=None):
        self.profiles = list(profiles if profiles is not None else ["default"])
        self.images = {}
        self.aliases = []
        self.instances = {}
        self.calls = []
        self._failures = {}
        self._operation_failures = {}
        self._op_counter = 0

    # ==========================================================
    # SEEDING / FAULT INJECTION
    # ==========================================================

    def add_image(self, image, aliases=()):
        """
        Register an image and the aliases pointing at it.

        :param image: Image record
        :param aliases: Alias names; each is registered for the image's type
        """
        self.images[image.fingerprint] = image
        for name in aliases:
            self.aliases.append(
                ImageAliasEntry(name=name, type=image.type, target=image.fingerprint)
            )

    def add_instance(self, instance):
        self.instances[instance.name] = copy.deepcopy(instance)

    def fail_next(self, method, error):
        """Raise ``error`` from the next call to ``method``."""
        self._failures[method] = error

    def fail_operation(self, method, error):
        """Make the operation returned by the next call to ``method`` fail on wait."""
        self._operation_failures[method] = error

    def _enter(self, method, *args):
        self.calls.append((method,) + args)
        error = self._failures.pop(method, None)
        if error is not None:
            raise error

    def _operation(self, method):
        self._op_counter += 1
        return MemoryOperation(
            f"op-{self._op_counter}",
            error=self._operation_failures.pop(method, None),
        )

    # ==========================================================
    # IMAGES
    # ==========================================================

    def get_image_alias_architectures(self, image_type, name):
        self._enter("get_image_alias_architectures", image_type, name)
        found = {}
        for entry in self.aliases:
            if entry.name != name or (image_type and entry.type != image_type):
                continue
            image = self.images[entry.target]
            found[image.architecture] = entry
        if not found:
            raise NotFoundError(f"Image alias {name} not found")
        return found

    def get_image(self, fingerprint):
        self._enter("get_image", fingerprint)
        if fingerprint not in self.images:
            raise NotFoundError(f"Image {fingerprint} not found")
        return self.images[fingerprint]

    # ==========================================================
    # PROFILES
    # ==========================================================

    def get_profile_names(self):
        self._enter("get_profile_names")
        return list(self.profiles)

    # ==========================================================
    # INSTANCES
    # ==========================================================

    def create_instance(self, body):
        self._enter("create_instance", body)
        name = body["name"]
        if name in self.instances:
            raise EndpointError(f"Instance {name} already exists", status_code=409)

        config = dict(body.get("config") or {})
        image = self.images.get((body.get("source") or {}).get("fingerprint", ""))
        if isinstance(image, Image):
            config.setdefault(IMAGE_OS_KEY, image.properties.get("os", ""))
            config.setdefault(IMAGE_RELEASE_KEY, image.properties.get("release", ""))

        self.instances[name] = InstanceFull(
            name=name,
            architecture=body.get("architecture", ""),
            status="Stopped",
            type=body.get("type", ""),
            expanded_config=config,
            state=InstanceState(status="Stopped", network={}),
        )
        log.debug("Created in-memory instance %s", name)
        return self._operation("create_instance")

    def get_instances_full(self, instance_type=""):
        self._enter("get_instances_full", instance_type)
        return [
            copy.deepcopy(instance)
            for instance in self.instances.values()
            if not instance_type or instance.type == instance_type
        ]

    def get_instance_full(self, name):
        self._enter("get_instance_full", name)
        if name not in self.instances:
            raise NotFoundError("Instance not found")
        return copy.deepcopy(self.instances[name])

    def update_instance_state(self, name, state):
        self._enter("update_instance_state", name, state)
        instance = self.instances.get(name)
        if instance is None:
            raise NotFoundError("Instance not found")

        action = state.get("action")
        if action == "start":
            if instance.status == "Running":
                raise EndpointError("The instance is already running", status_code=400)
            self._set_status(instance, "Running")
        elif action == "stop":
            if instance.status == "Stopped":
                raise EndpointError("The instance is already stopped", status_code=400)
            self._set_status(instance, "Stopped")
        else:
            raise EndpointError(f"Unknown state action {action}", status_code=400)
        return self._operation("update_instance_state")

    def delete_instance(self, name):
        self._enter("delete_instance", name)
        instance = self.instances.get(name)
        if instance is None:
            raise NotFoundError("Instance not found")
        if instance.status == "Running":
            raise EndpointError("Instance is running", status_code=400)
        op = self._operation("delete_instance")
        if op.error is None:
            del self.instances[name]
        return op

    @staticmethod
    def _set_status(instance, status):
        instance.status = status
        if instance.state is None:
            instance.state = InstanceState(status=status, network={})
        else:
            instance.state.status = status
