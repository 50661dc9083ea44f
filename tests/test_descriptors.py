"""Tests for resource descriptors."""

import pytest

from vcd_provisioner.descriptors import (
    DESCRIPTORS,
    AttributeDescriptor,
    Mutability,
    ResourceDescriptor,
    UnknownKindError,
    get_descriptor,
)
from vcd_provisioner.models import SPEC_MODELS


class TestDescriptorRegistry:
    """Tests for the descriptor registry."""

    def test_every_spec_model_has_a_descriptor(self) -> None:
        assert set(SPEC_MODELS) == set(DESCRIPTORS)

    def test_spec_fields_are_described(self) -> None:
        """Every field a spec model can emit is known to its descriptor."""
        for kind, model in SPEC_MODELS.items():
            descriptor = get_descriptor(kind)
            known = {a.name for a in descriptor.attributes} | {c.name for c in descriptor.collections}
            emitted = {
                field.alias or name for name, field in model.model_fields.items()
            }
            assert emitted <= known, f"{kind}: {sorted(emitted - known)}"

    def test_unknown_kind(self) -> None:
        with pytest.raises(UnknownKindError) as exc_info:
            get_descriptor("firewall")

        assert "firewall" in str(exc_info.value)


class TestResourceDescriptor:
    """Tests for ResourceDescriptor validation and lookups."""

    def test_duplicate_attribute_rejected(self) -> None:
        with pytest.raises(ValueError, match="Duplicate"):
            ResourceDescriptor(
                kind="thing",
                attributes=(AttributeDescriptor("name"), AttributeDescriptor("name")),
            )

    def test_unknown_reference_rejected(self) -> None:
        with pytest.raises(ValueError, match="references unknown attribute"):
            ResourceDescriptor(
                kind="thing",
                attributes=(AttributeDescriptor("default_id", references="ids"),),
            )

    def test_vdc_sizing_default_references_policy_list(self) -> None:
        vdc = get_descriptor("vdc")
        default = vdc.attribute("default_vm_sizing_policy_id")

        assert default is not None
        assert default.references == "vm_sizing_policy_ids"
        assert default.update_group != vdc.attribute("vm_sizing_policy_ids").update_group

    def test_catalog_mutability(self) -> None:
        catalog = get_descriptor("catalog")

        assert catalog.attribute("name").mutability == Mutability.IMMUTABLE
        assert catalog.attribute("publish_enabled").update_group == "publish"
        assert "href" in catalog.computed_names
        assert catalog.group_order == ("core", "publish", "metadata")

    def test_collections(self) -> None:
        storage = get_descriptor("vdc").collection("storage_profiles")
        networks = get_descriptor("vm").collection("networks")

        assert storage is not None and storage.exclusivity_field == "default"
        assert networks is not None and networks.ordered
        assert get_descriptor("catalog").collection("storage_profiles") is None
