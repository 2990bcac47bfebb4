"""
Instance-argument builder: turns a bootstrap request and a resolved image into
the body of an Incus create-instance call.
"""

import copy
import logging

from garm_provider_incus import cloudconfig
from garm_provider_incus.errors import (
    ProfileNotFoundError,
    UnsupportedArchitectureError,
    ValidationError,
)
from garm_provider_incus.images import instance_source
from garm_provider_incus.models import (
    CANONICAL_TO_NATIVE_ARCH,
    DEFAULT_PROFILE,
    INSTANCE_DESCRIPTION,
    WINDOWS_BOOT_SCRIPT_MARKER,
    CreationArgs,
    InstanceTags,
    InstanceType,
    OSType,
)
from garm_provider_incus.specs import parse_extra_specs

log = logging.getLogger(__name__)


def native_arch(os_arch):
    """
    Native architecture for a canonical one.

    :raises UnsupportedArchitectureError: for anything outside the known set
    """
    try:
        return CANONICAL_TO_NATIVE_ARCH[os_arch]
    except KeyError:
        raise UnsupportedArchitectureError(f"architecture {os_arch} is not supported") from None


def merge_extra_specs(bootstrap, specs):
    """
    Return a copy of ``bootstrap`` with the extra specs folded into its
    user data options.
    """
    merged = copy.deepcopy(bootstrap)
    options = merged.user_data_options
    for package in specs.extra_packages:
        if package not in options.extra_packages:
            options.extra_packages.append(package)
    options.disable_updates = options.disable_updates or specs.disable_updates
    options.enable_boot_debug = options.enable_boot_debug or specs.enable_boot_debug
    return merged


class InstanceArgsBuilder:
    """
    :param server: InstanceServer, used to list profiles
    :param config: ProviderConfig
    :param controller_id: ID of the orchestrator controller running us
    :param tool_selector: ``(os_type, os_arch, tools) -> RunnerApplicationDownload``
    :param cloud_config_renderer: ``(bootstrap, tools, runner_name, specs) -> str``
    """

    def __init__(
        self,
        server,
        config,
        controller_id,
        tool_selector=cloudconfig.select_tools,
        cloud_config_renderer=cloudconfig.render_cloud_config,
    ):
        self.server = server
        self.config = config
        self.controller_id = controller_id
        self.tool_selector = tool_selector
        self.cloud_config_renderer = cloud_config_renderer

    def validate(self, bootstrap):
        """Checks that need no endpoint round trip."""
        if not bootstrap.name:
            raise ValidationError("missing name")
        native_arch(bootstrap.os_arch)

    def get_profiles(self, flavor):
        profiles = [flavor]
        if self.config.include_default_profile:
            profiles = [DEFAULT_PROFILE, flavor]

        known = self.server.get_profile_names()
        if flavor not in known:
            raise ProfileNotFoundError(
                f"looking for profile {flavor}: profile not found (available: {', '.join(known)})"
            )
        return profiles

    def build(self, bootstrap, resolved, specs=None):
        """
        :param bootstrap: BootstrapInstance
        :param resolved: ResolvedImage
        :param specs: Parsed ExtraSpecs; parsed from ``bootstrap.extra_specs``
            when not given
        :return: CreationArgs

        Virtual machines get ``security.secureboot=false`` whenever secure boot
        is disabled in the config, whatever their OS type. Containers never
        carry the key.
        """
        if not bootstrap.name:
            raise ValidationError("missing name")

        profiles = self.get_profiles(bootstrap.flavor)
        architecture = native_arch(bootstrap.os_arch)
        instance_type = self.config.get_instance_type()

        if specs is None:
            specs = parse_extra_specs(bootstrap.extra_specs)

        bootstrap = merge_extra_specs(bootstrap, specs)
        tools = self.tool_selector(bootstrap.os_type, bootstrap.os_arch, bootstrap.tools)
        user_data = self.cloud_config_renderer(bootstrap, tools, bootstrap.name, specs)

        if instance_type == InstanceType.VIRTUAL_MACHINE and bootstrap.os_type == OSType.WINDOWS:
            user_data = f"{WINDOWS_BOOT_SCRIPT_MARKER}\n{user_data}"

        args = CreationArgs(
            name=bootstrap.name,
            architecture=architecture,
            profiles=profiles,
            description=INSTANCE_DESCRIPTION,
            user_data=user_data,
            tags=InstanceTags(
                os_type=bootstrap.os_type,
                os_arch=bootstrap.os_arch,
                controller_id=self.controller_id,
                pool_id=bootstrap.pool_id,
            ),
            source=instance_source(resolved),
            type=instance_type,
            disable_secure_boot=(
                instance_type == InstanceType.VIRTUAL_MACHINE and not self.config.secure_boot
            ),
        )
        log.debug("Built create args for %s (profiles=%s, type=%s)", args.name, profiles, instance_type)
        return args
