import json

import pytest

from testbed import testbed as tb
from testbed import errors
from testbed.errors import PluginError
from testbed.registry import Plugin, PluginRegistry


def test_build_and_write_specs(tmp_path, script_registry):
    bed = tb.Testbed(tmp_path / "bed", registry=script_registry)
    specs = bed.build_specs("script", 3, {"peer_id": "QmX"})
    bed.write_specs(specs)

    raw = json.loads(bed.spec_path.read_text())
    assert [entry["dir"] for entry in raw] == [str(tmp_path / "bed" / str(i)) for i in range(3)]
    assert all(entry["type"] == "script" and entry["attrs"] == {"peer_id": "QmX"} for entry in raw)
    assert all((tmp_path / "bed" / str(i)).is_dir() for i in range(3))
    assert bed.specs() == specs


def test_write_specs_refuses_to_overwrite(tmp_path, script_registry):
    bed = tb.Testbed(tmp_path, registry=script_registry)
    bed.write_specs(bed.build_specs("script", 1))

    with pytest.raises(errors.TestbedError, match="already exists"):
        bed.write_specs(bed.build_specs("script", 2))

    bed.write_specs(bed.build_specs("script", 2), force=True)
    assert len(bed) == 2


def test_unknown_type_is_rejected_before_writing(tmp_path, script_registry):
    bed = tb.Testbed(tmp_path, registry=script_registry)
    with pytest.raises(PluginError, match="known: script"):
        bed.build_specs("nope", 2)
    assert not bed.spec_path.exists()


def test_missing_testbed(tmp_path, script_registry):
    bed = tb.Testbed(tmp_path / "absent", registry=script_registry)
    with pytest.raises(errors.TestbedNotFoundError):
        bed.nodes()


@pytest.mark.parametrize(
    "content",
    ["{not json", json.dumps({"type": "script"}), json.dumps([{"type": "script"}]), json.dumps([{"type": "script", "dir": "d", "attrs": []}])],
)
def test_malformed_spec_file(tmp_path, script_registry, content):
    bed = tb.Testbed(tmp_path, registry=script_registry)
    bed.spec_path.write_text(content)
    with pytest.raises(errors.TestbedError):
        bed.specs()


def test_nodes_keep_positions(tmp_path, script_registry):
    bed = tb.Testbed(tmp_path, registry=script_registry)
    bed.write_specs(bed.build_specs("script", 3))

    nodes = bed.nodes()
    assert [n.dir for n in nodes] == [str(tmp_path / str(i)) for i in range(3)]
    assert bed.node(1) is nodes[1]
    with pytest.raises(errors.TestbedError, match="outside of valid range"):
        bed.node(3)


def test_spec_attrs_reach_the_plugin(tmp_path):
    seen = []

    def _new_node(directory, attrs):
        seen.append((directory, attrs))
        return object()

    registry = PluginRegistry([Plugin(name="probe", new_node=_new_node)])
    bed = tb.Testbed(tmp_path, registry=registry)
    bed.write_specs([tb.NodeSpec(type="probe", dir=str(tmp_path / "a"), attrs={"k": "v"})])

    bed.nodes()
    assert seen == [(str(tmp_path / "a"), {"k": "v"})]


def test_registry_rejects_duplicates():
    plugin = Plugin(name="probe", new_node=lambda d, a: None, attr_desc={"k": "a key"})
    registry = PluginRegistry([plugin])
    with pytest.raises(PluginError, match="already registered"):
        registry.register(plugin)
    registry.register(plugin, replace=True)

    assert plugin.describe("k") == "a key"
    with pytest.raises(PluginError, match="unknown attribute"):
        plugin.describe("missing")
