import base64
import json

import pytest

from garm_provider_incus.errors import SchemaError
from garm_provider_incus.specs import ExtraSpecs, json_schema_validation, parse_extra_specs


def _b64(text):
    return base64.b64encode(text.encode()).decode()


def test_empty_specs():
    assert parse_extra_specs(None) == ExtraSpecs()
    assert parse_extra_specs({}) == ExtraSpecs()


def test_full_specs():
    specs = parse_extra_specs(
        {
            "extra_packages": ["jq", "unzip"],
            "disable_updates": True,
            "enable_boot_debug": True,
            "runner_install_template": _b64("#!/bin/bash\necho {{ runner_name }}\n"),
            "pre_install_scripts": {"01-setup": _b64("#!/bin/sh\necho setup\n")},
            "extra_context": {"region": "eu"},
        }
    )
    assert specs.extra_packages == ["jq", "unzip"]
    assert specs.disable_updates is True
    assert specs.enable_boot_debug is True
    assert specs.runner_install_template == "#!/bin/bash\necho {{ runner_name }}\n"
    assert specs.pre_install_scripts == {"01-setup": b"#!/bin/sh\necho setup\n"}
    assert specs.extra_context == {"region": "eu"}


def test_json_text():
    specs = parse_extra_specs(json.dumps({"extra_packages": ["git"]}))
    assert specs.extra_packages == ["git"]


def test_unknown_key_rejected():
    with pytest.raises(SchemaError) as exc:
        parse_extra_specs({"extra_packages": ["git"], "image": "ubuntu"})
    assert "failed to validate extra specs" in str(exc.value)
    assert "image" in str(exc.value)


@pytest.mark.parametrize(
    "data, field",
    [
        ({"extra_packages": "git"}, "extra_packages"),
        ({"extra_packages": [1, 2]}, "extra_packages.0"),
        ({"disable_updates": "yes"}, "disable_updates"),
        ({"enable_boot_debug": 1}, "enable_boot_debug"),
        ({"runner_install_template": "not base64!"}, "runner_install_template"),
    ],
)
def test_schema_violation_names_field(data, field):
    with pytest.raises(SchemaError) as exc:
        json_schema_validation(data)
    assert str(exc.value).startswith("schema validation failed: [")
    assert f"{field}:" in str(exc.value)


def test_all_violations_reported():
    with pytest.raises(SchemaError) as exc:
        json_schema_validation({"disable_updates": "no", "enable_boot_debug": "no"})
    assert "disable_updates:" in str(exc.value)
    assert "enable_boot_debug:" in str(exc.value)


def test_malformed_json():
    with pytest.raises(SchemaError) as exc:
        parse_extra_specs("{not json")
    assert "failed to validate extra specs" in str(exc.value)


def test_non_object():
    with pytest.raises(SchemaError):
        parse_extra_specs("[1, 2]")


def test_install_template_must_be_utf8():
    template = base64.b64encode(b"\xff\xfe").decode()
    with pytest.raises(SchemaError) as exc:
        parse_extra_specs({"runner_install_template": template})
    assert "failed to decode runner_install_template" in str(exc.value)
