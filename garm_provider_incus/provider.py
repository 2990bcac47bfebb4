"""
Lifecycle controller: create, inspect, list, start, stop and delete runner
instances on one Incus endpoint.

Every call is a strictly sequential chain of blocking endpoint requests.
Asynchronous endpoint operations are waited on before returning, and every
wait observes the caller's ``cancel`` event.
"""

import logging

from garm_provider_incus.builder import InstanceArgsBuilder, native_arch
from garm_provider_incus.classify import Condition, is_not_found, label, tolerate
from garm_provider_incus.errors import (
    EndpointError,
    NotFoundError,
    OperationCancelledError,
    ProviderError,
)
from garm_provider_incus.images import ImageResolver
from garm_provider_incus.models import CONTROLLER_ID_KEY, POOL_ID_KEY, InstanceType
from garm_provider_incus.specs import parse_extra_specs
from garm_provider_incus.translate import instance_to_provider_instance

log = logging.getLogger(__name__)

# Incus treats a negative state-change timeout as "wait forever"
WAIT_FOREVER = -1

STOP_TOLERATED = frozenset([Condition.NOT_FOUND, Condition.ALREADY_STOPPED])
DELETE_TOLERATED = frozenset([Condition.NOT_FOUND])


def _reraise(original, err):
    if err is original:
        raise original
    raise err from original


class IncusProvider:
    """
    :param config: ProviderConfig
    :param controller_id: ID of the controller owning the instances
    :param server: InstanceServer
    :param resolver: ImageResolver; built from ``config.image_remotes`` when
        not given
    :param builder: InstanceArgsBuilder; built from ``server`` and ``config``
        when not given
    :param operation_timeout: Seconds to wait on each asynchronous operation,
        ``None`` to wait forever
    """

    def __init__(self, config, controller_id, server, resolver=None, builder=None, operation_timeout=None):
        self.config = config
        self.controller_id = controller_id
        self.server = server
        self.resolver = resolver or ImageResolver(config.image_remotes)
        self.builder = builder or InstanceArgsBuilder(server, config, controller_id)
        self.operation_timeout = operation_timeout

    def _wait(self, op, cancel):
        return op.wait(timeout=self.operation_timeout, cancel=cancel)

    # ==========================================================
    # CREATE
    # ==========================================================

    def create_instance(self, bootstrap, cancel=None):
        """
        Create and start a runner instance.

        Nothing is cleaned up on failure: an instance that was created but
        failed to start is left in place for Get/List to report.

        :param bootstrap: BootstrapInstance
        :param cancel: threading.Event aborting the waits when set
        :return: ProviderInstance
        """
        self.builder.validate(bootstrap)
        specs = parse_extra_specs(bootstrap.extra_specs)

        resolved = self.resolver.resolve(
            bootstrap.image,
            self.config.get_instance_type(),
            native_arch(bootstrap.os_arch),
        )
        args = self.builder.build(bootstrap, resolved, specs)

        log.info("Creating instance %s from %s (%s)", args.name, bootstrap.image, resolved.fingerprint)
        try:
            op = self.server.create_instance(args.to_api())
            self._wait(op, cancel)
        except EndpointError as e:
            _reraise(e, label(e, "create_instance"))

        log.info("Starting instance %s", args.name)
        try:
            op = self.server.update_instance_state(
                args.name, {"action": "start", "timeout": WAIT_FOREVER, "force": False, "stateful": False}
            )
            self._wait(op, cancel)
        except EndpointError as e:
            _reraise(e, label(e, "start_instance"))

        return self.get_instance(args.name)

    # ==========================================================
    # READ
    # ==========================================================

    def get_instance(self, name, cancel=None):
        """
        :raises NotFoundError: when the endpoint has no such instance
        """
        try:
            instance = self.server.get_instance_full(name)
        except EndpointError as e:
            if is_not_found(e):
                if isinstance(e, NotFoundError):
                    raise
                raise NotFoundError(f"instance {name} not found: {e.message}") from e
            _reraise(e, label(e, "get_instance"))
        return instance_to_provider_instance(instance)

    def list_instances(self, pool_id=None, cancel=None):
        """
        Instances owned by this controller, optionally restricted to one pool.

        Instances without a matching controller tag are skipped.
        """
        try:
            instances = self.server.get_instances_full(InstanceType.ANY)
        except EndpointError as e:
            _reraise(e, label(e, "list_instances"))

        result = []
        for instance in instances:
            config = instance.expanded_config or {}
            if config.get(CONTROLLER_ID_KEY) != self.controller_id:
                log.debug("Skipping instance %s: not owned by controller %s", instance.name, self.controller_id)
                continue
            if pool_id and config.get(POOL_ID_KEY) != pool_id:
                continue
            result.append(instance_to_provider_instance(instance))
        return result

    # ==========================================================
    # STATE CHANGES
    # ==========================================================

    def _change_state(self, name, action, force, cancel):
        op = self.server.update_instance_state(
            name, {"action": action, "timeout": WAIT_FOREVER, "force": force, "stateful": False}
        )
        self._wait(op, cancel)

    def stop(self, name, force=False, cancel=None):
        """
        Stop an instance. Already stopped or absent instances count as stopped.
        """
        log.info("Stopping instance %s (force=%s)", name, force)
        try:
            self._change_state(name, "stop", force, cancel)
        except EndpointError as e:
            err = tolerate(e, STOP_TOLERATED, "stop_instance")
            if err is not None:
                _reraise(e, err)

    def start(self, name, cancel=None):
        """
        :raises NotFoundError: when the endpoint has no such instance
        """
        log.info("Starting instance %s", name)
        try:
            self._change_state(name, "start", False, cancel)
        except EndpointError as e:
            _reraise(e, label(e, "start_instance"))

    # ==========================================================
    # DELETE
    # ==========================================================

    def delete_instance(self, name, cancel=None):
        """
        Force-stop then delete an instance. Deleting an absent instance succeeds.

        The stop is best effort; any stop failure is logged and the delete
        call reports the real problem if there is one.
        """
        try:
            self.stop(name, force=True, cancel=cancel)
        except OperationCancelledError:
            raise
        except ProviderError as e:
            log.warning("Failed to stop instance %s before delete, continuing: %s", name, e)

        log.info("Deleting instance %s", name)
        try:
            op = self.server.delete_instance(name)
            self._wait(op, cancel)
        except EndpointError as e:
            err = tolerate(e, DELETE_TOLERATED, "delete_instance")
            if err is not None:
                _reraise(e, err)
            log.info("Instance %s already gone", name)

    def remove_all_instances(self, cancel=None):
        """
        Delete every instance owned by this controller, in listing order.

        The first delete that fails aborts the batch.
        """
        instances = self.list_instances(cancel=cancel)
        log.info("Removing %d instances for controller %s", len(instances), self.controller_id)
        for instance in instances:
            self.delete_instance(instance.name, cancel=cancel)
