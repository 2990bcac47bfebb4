"""
Default collaborators for the argument builder: runner tool selection and
user-data rendering.

Linux instances get a ``#cloud-config`` document that writes and runs the
runner install script. Windows instances get the PowerShell install script
itself; the builder adds the first-boot marker for VMs.

Both are injected into ``InstanceArgsBuilder`` and can be replaced.
"""

import base64
import logging

import yaml
from jinja2 import Environment, StrictUndefined, TemplateError

from garm_provider_incus.errors import ValidationError
from garm_provider_incus.models import OSType

log = logging.getLogger(__name__)

RUNNER_USERNAME = "runner"
RUNNER_GROUP = "runner"
INSTALL_SCRIPT_PATH = "/install_runner.sh"
PRE_INSTALL_DIR = "/garm-pre-install"

DEFAULT_PACKAGES = ["curl", "tar"]

# canonical OS/arch -> names used by the runner download listing
TOOLS_OS = {
    OSType.LINUX: "linux",
    OSType.WINDOWS: "win",
}

TOOLS_ARCH = {
    "amd64": "x64",
    "arm64": "arm64",
    "arm": "arm",
    "i386": "x86",
}

LINUX_INSTALL_TEMPLATE = """#!/bin/bash

set -e
set -o pipefail

{% if enable_boot_debug %}set -x{% endif %}

CALLBACK_URL="{{ callback_url }}"
METADATA_URL="{{ metadata_url }}"
BEARER_TOKEN="{{ callback_token }}"

function call() {
	PAYLOAD="$1"
	[[ -z "$CALLBACK_URL" ]] && return 0
	curl --retry 5 --retry-delay 5 --retry-connrefused --fail -s -X POST -d "${PAYLOAD}" -H 'Accept: application/json' -H "Authorization: Bearer ${BEARER_TOKEN}" "${CALLBACK_URL}" || echo "failed to call home: exit code ($?)"
}

function sendStatus() {
	MSG="$1"
	call "{\\"status\\": \\"installing\\", \\"message\\": \\"$MSG\\"}"
}

function success() {
	MSG="$1"
	ID=$2
	call "{\\"status\\": \\"idle\\", \\"message\\": \\"$MSG\\", \\"agent_id\\": $ID}"
}

function fail() {
	MSG="$1"
	call "{\\"status\\": \\"failed\\", \\"message\\": \\"$MSG\\"}"
	exit 1
}

sendStatus "downloading tools from {{ download_url }}"

TEMP_TOKEN=""
{% if temp_download_token %}TEMP_TOKEN="Authorization: Bearer {{ temp_download_token }}"{% endif %}

curl --retry 5 --retry-delay 5 --retry-connrefused --fail -L -H "${TEMP_TOKEN}" -o "/home/{{ runner_username }}/{{ filename }}" "{{ download_url }}" || fail "failed to download tools"

mkdir -p /home/{{ runner_username }}/actions-runner || fail "failed to create actions-runner folder"

sendStatus "extracting runner"
tar xf "/home/{{ runner_username }}/{{ filename }}" -C /home/{{ runner_username }}/actions-runner/ || fail "failed to extract runner"
chown {{ runner_username }}:{{ runner_group }} -R /home/{{ runner_username }}/actions-runner/ || fail "failed to change owner"

sendStatus "installing dependencies"
cd /home/{{ runner_username }}/actions-runner
sudo ./bin/installdependencies.sh || fail "failed to install dependencies"

sendStatus "fetching runner registration token"
GITHUB_TOKEN=$(curl --retry 5 --retry-delay 5 --retry-connrefused --fail -s -X GET -H 'Accept: application/json' -H "Authorization: Bearer ${BEARER_TOKEN}" "${METADATA_URL}/runner-registration-token/") || fail "failed to get runner registration token"

sendStatus "configuring runner"
sudo -u {{ runner_username }} -- ./config.sh --unattended --url "{{ repo_url }}" --token "$GITHUB_TOKEN" --name "{{ runner_name }}" --labels "{{ runner_labels }}" {% if github_runner_group %}--runnergroup "{{ github_runner_group }}" {% endif %}--ephemeral || fail "failed to configure runner"

sendStatus "installing runner service"
./svc.sh install {{ runner_username }} || fail "failed to install service"

sendStatus "starting service"
./svc.sh start || fail "failed to start service"

AGENT_ID=$(grep "agentId" /home/{{ runner_username }}/actions-runner/.runner | tr -d -c 0-9)
success "runner successfully installed" $AGENT_ID
"""

WINDOWS_INSTALL_TEMPLATE = """
$ErrorActionPreference="Stop"
{% if enable_boot_debug %}Set-PSDebug -Trace 1{% endif %}

$CallbackURL="{{ callback_url }}"
$MetadataURL="{{ metadata_url }}"
$Token="{{ callback_token }}"

function Update-GarmStatus {
	param([string]$Message, [string]$Status="installing")
	if (-not $CallbackURL) { return }
	$body = @{ "status" = $Status; "message" = $Message } | ConvertTo-Json
	Invoke-RestMethod -Uri $CallbackURL -Method Post -Body $body -Headers @{ "Authorization" = "Bearer $Token" } -ContentType "application/json" | Out-Null
}

try {
	Update-GarmStatus "downloading tools from {{ download_url }}"
	$downloadPath = Join-Path $env:TMP "{{ filename }}"
	$headers = @{}
	{% if temp_download_token %}$headers["Authorization"] = "Bearer {{ temp_download_token }}"{% endif %}
	Invoke-WebRequest -UseBasicParsing -Uri "{{ download_url }}" -OutFile $downloadPath -Headers $headers

	$runnerDir = "C:\\actions-runner"
	New-Item -ItemType Directory -Force -Path $runnerDir | Out-Null
	Update-GarmStatus "extracting runner"
	Expand-Archive -Path $downloadPath -DestinationPath $runnerDir -Force

	Update-GarmStatus "fetching runner registration token"
	$GithubToken = Invoke-RestMethod -Uri "$MetadataURL/runner-registration-token/" -Headers @{ "Authorization" = "Bearer $Token" }

	Update-GarmStatus "configuring runner"
	& "$runnerDir\\config.cmd" --unattended --url "{{ repo_url }}" --token $GithubToken --name "{{ runner_name }}" --labels "{{ runner_labels }}" {% if github_runner_group %}--runnergroup "{{ github_runner_group }}" {% endif %}--ephemeral --runasservice
	if ($LASTEXITCODE) { throw "failed to configure runner" }

	$agentInfo = Get-Content "$runnerDir\\.runner" -Raw | ConvertFrom-Json
	$body = @{ "status" = "idle"; "message" = "runner successfully installed"; "agent_id" = $agentInfo.agentId } | ConvertTo-Json
	Invoke-RestMethod -Uri $CallbackURL -Method Post -Body $body -Headers @{ "Authorization" = "Bearer $Token" } -ContentType "application/json" | Out-Null
} catch {
	Update-GarmStatus $_.Exception.Message "failed"
	throw
}
"""


# ==============================================================
# TOOL SELECTION
# ==============================================================

def select_tools(os_type, os_arch, tools):
    """
    Pick the runner download matching the requested OS and architecture.

    :param os_type: Canonical OS type (``linux``/``windows``)
    :param os_arch: Canonical architecture (``amd64``, ``arm64``, ...)
    :param tools: List of RunnerApplicationDownload
    :return: RunnerApplicationDownload
    """
    wanted_os = TOOLS_OS.get(os_type)
    wanted_arch = TOOLS_ARCH.get(os_arch)
    for tool in tools:
        if tool.os == wanted_os and tool.architecture == wanted_arch:
            return tool
    raise ValidationError(f"failed to find tools for OS {os_type} and arch {os_arch}")


# ==============================================================
# RENDERING
# ==============================================================

def _template_context(bootstrap, tools, runner_name, specs):
    context = {
        "filename": tools.filename,
        "download_url": tools.download_url,
        "temp_download_token": tools.temp_download_token,
        "runner_username": RUNNER_USERNAME,
        "runner_group": RUNNER_GROUP,
        "repo_url": bootstrap.repo_url,
        "metadata_url": bootstrap.metadata_url,
        "runner_name": runner_name,
        "runner_labels": ",".join(bootstrap.labels),
        "callback_url": bootstrap.callback_url,
        "callback_token": bootstrap.instance_token,
        "github_runner_group": bootstrap.github_runner_group,
        "enable_boot_debug": bootstrap.user_data_options.enable_boot_debug,
        "use_jit_config": bootstrap.jit_config_enabled,
    }
    context["extra_context"] = dict(specs.extra_context) if specs else {}
    return context


def render_install_script(bootstrap, tools, runner_name, specs=None):
    """
    Render the runner install script for the bootstrap OS type.

    A ``runner_install_template`` in the extra specs replaces the built-in
    template.
    """
    if specs is not None and specs.runner_install_template:
        source = specs.runner_install_template
    elif bootstrap.os_type == OSType.WINDOWS:
        source = WINDOWS_INSTALL_TEMPLATE
    else:
        source = LINUX_INSTALL_TEMPLATE

    env = Environment(undefined=StrictUndefined, keep_trailing_newline=True)
    try:
        return env.from_string(source).render(**_template_context(bootstrap, tools, runner_name, specs))
    except TemplateError as e:
        raise ValidationError(f"failed to render runner install template: {e}") from e


def _write_file(path, content, permissions="0755"):
    if isinstance(content, str):
        content = content.encode("utf-8")
    return {
        "encoding": "b64",
        "content": base64.b64encode(content).decode("ascii"),
        "owner": "root:root",
        "path": path,
        "permissions": permissions,
    }


def render_cloud_config(bootstrap, tools, runner_name, specs=None):
    """
    Build the user-data payload for a new instance.

    :param bootstrap: BootstrapInstance, with extra specs already merged into
        ``user_data_options``
    :param tools: Selected RunnerApplicationDownload
    :param runner_name: Name the runner registers with
    :param specs: Parsed ExtraSpecs, or None
    :return: user-data string
    """
    install_script = render_install_script(bootstrap, tools, runner_name, specs)

    if bootstrap.os_type == OSType.WINDOWS:
        return install_script

    options = bootstrap.user_data_options
    packages = list(DEFAULT_PACKAGES)
    for package in options.extra_packages:
        if package not in packages:
            packages.append(package)

    cloud_config = {
        "package_upgrade": not options.disable_updates,
        "packages": packages,
        "ssh_authorized_keys": list(bootstrap.ssh_keys),
        "system_info": {
            "default_user": {
                "name": RUNNER_USERNAME,
                "home": f"/home/{RUNNER_USERNAME}",
                "shell": "/bin/bash",
                "groups": ["sudo", "adm", "cdrom", "dialout", "dip", "video", "plugdev", "netdev", "docker", "lxd"],
                "sudo": "ALL=(ALL) NOPASSWD:ALL",
            }
        },
        "write_files": [],
        "runcmd": [],
    }

    if bootstrap.ca_cert_bundle:
        cloud_config["ca-certs"] = {"trusted": [bootstrap.ca_cert_bundle]}

    if specs is not None:
        for name in sorted(specs.pre_install_scripts):
            path = f"{PRE_INSTALL_DIR}/{name}"
            cloud_config["write_files"].append(_write_file(path, specs.pre_install_scripts[name]))
            cloud_config["runcmd"].append(path)

    cloud_config["write_files"].append(_write_file(INSTALL_SCRIPT_PATH, install_script))
    cloud_config["runcmd"].extend([INSTALL_SCRIPT_PATH, f"rm -f {INSTALL_SCRIPT_PATH}"])

    log.debug("Rendered cloud-config for %s (%d packages)", runner_name, len(packages))
    return "#cloud-config\n" + yaml.safe_dump(cloud_config, sort_keys=False, default_flow_style=False)
