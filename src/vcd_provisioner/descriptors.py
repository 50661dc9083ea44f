"""Resource descriptors: attribute mutability, update grouping and child collections.

A ResourceDescriptor is the only thing the planner knows about a resource
kind. It lists every attribute explicitly (no reflection over spec models)
together with:

- mutability: IMMUTABLE attributes require replacement when they change,
  MUTABLE ones are updated in place, COMPUTED ones are assigned by the
  platform and never sent.
- update_group: attributes the platform updates through the same endpoint.
  Each group becomes its own UpdateFields operation so a failure of one
  endpoint does not block or duplicate another.
- references: the attribute whose update must land before this one.
- meaningful_zero: the attribute's zero value is a real setting (a quota
  of 0 meaning "unlimited") and must not be confused with "unset".
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from .locks import gateway_child_scopes, no_scopes, owner_scopes, parent_scope, self_scope
from .resources import ResourceInstance


class Mutability(str, Enum):
    """How an attribute reacts to a change of its desired value."""

    IMMUTABLE = "immutable"
    MUTABLE = "mutable"
    COMPUTED = "computed"


class UnknownKindError(KeyError):
    """Raised when no descriptor is registered for a resource kind."""

    pass


DEFAULT_UPDATE_GROUP = "core"


@dataclass(frozen=True)
class AttributeDescriptor:
    """Per-attribute metadata."""

    name: str
    mutability: Mutability = Mutability.MUTABLE
    update_group: str = DEFAULT_UPDATE_GROUP
    meaningful_zero: bool = False
    references: str | None = None


@dataclass(frozen=True)
class CollectionDescriptor:
    """A child collection synchronized by natural key.

    exclusivity_field names a boolean flag exactly one member must carry.
    compared_fields limits which child fields count as a change; empty means
    every field except the key.
    """

    name: str
    key_field: str = "name"
    exclusivity_field: str | None = None
    ordered: bool = False
    compared_fields: tuple[str, ...] = ()


@dataclass(frozen=True)
class ResourceDescriptor:
    """Schema and lifecycle hooks of one resource kind."""

    kind: str
    attributes: tuple[AttributeDescriptor, ...]
    collections: tuple[CollectionDescriptor, ...] = ()
    # Order in which update groups are applied when references do not decide
    group_order: tuple[str, ...] = (DEFAULT_UPDATE_GROUP,)
    lock_scopes: Callable[[ResourceInstance], set[str]] = no_scopes
    _by_name: dict[str, AttributeDescriptor] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        names = [a.name for a in self.attributes]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"Duplicate attributes in descriptor '{self.kind}': {duplicates}")
        self._by_name.update({a.name: a for a in self.attributes})
        for attribute in self.attributes:
            if attribute.references is not None and attribute.references not in self._by_name:
                raise ValueError(
                    f"Attribute '{attribute.name}' of '{self.kind}' references "
                    f"unknown attribute '{attribute.references}'"
                )

    def attribute(self, name: str) -> AttributeDescriptor | None:
        return self._by_name.get(name)

    def collection(self, name: str) -> CollectionDescriptor | None:
        for collection in self.collections:
            if collection.name == name:
                return collection
        return None

    @property
    def computed_names(self) -> frozenset[str]:
        return frozenset(a.name for a in self.attributes if a.mutability == Mutability.COMPUTED)


def _attrs(*specs: AttributeDescriptor) -> tuple[AttributeDescriptor, ...]:
    return specs


def _mutable(name: str, group: str = DEFAULT_UPDATE_GROUP, **kwargs: object) -> AttributeDescriptor:
    return AttributeDescriptor(name, Mutability.MUTABLE, group, **kwargs)  # type: ignore[arg-type]


def _immutable(name: str) -> AttributeDescriptor:
    return AttributeDescriptor(name, Mutability.IMMUTABLE)


def _computed(name: str) -> AttributeDescriptor:
    return AttributeDescriptor(name, Mutability.COMPUTED)


METADATA = _mutable("metadata_entry", "metadata")


# =============================================================================
# Descriptors
# =============================================================================

ORG = ResourceDescriptor(
    kind="org",
    attributes=_attrs(
        _mutable("name"),
        _mutable("full_name"),
        _mutable("description"),
        _mutable("is_enabled"),
        _mutable("deployed_vm_quota", meaningful_zero=True),
        _mutable("stored_vm_quota", meaningful_zero=True),
        _mutable("can_publish_catalogs"),
        METADATA,
        _computed("href"),
    ),
    group_order=("core", "metadata"),
)

VDC = ResourceDescriptor(
    kind="vdc",
    attributes=_attrs(
        _mutable("name"),
        _immutable("org"),
        _immutable("provider_vdc_name"),
        _immutable("allocation_model"),
        _mutable("description"),
        _mutable("cpu_allocated", meaningful_zero=True),
        _mutable("cpu_limit", meaningful_zero=True),
        _mutable("memory_allocated", meaningful_zero=True),
        _mutable("memory_limit", meaningful_zero=True),
        _mutable("cpu_guaranteed", meaningful_zero=True),
        _mutable("memory_guaranteed", meaningful_zero=True),
        _mutable("cpu_speed"),
        _mutable("network_quota", meaningful_zero=True),
        _mutable("vm_quota", meaningful_zero=True),
        _mutable("enabled"),
        _mutable("enable_thin_provisioning"),
        _mutable("enable_fast_provisioning"),
        _mutable("network_pool_name"),
        _mutable("elasticity"),
        _mutable("include_vm_memory_overhead"),
        METADATA,
        _mutable("vm_sizing_policy_ids", "sizing_policies"),
        _mutable(
            "default_vm_sizing_policy_id",
            "default_sizing_policy",
            references="vm_sizing_policy_ids",
        ),
        _computed("href"),
        _computed("storage_used_in_mb"),
    ),
    collections=(
        CollectionDescriptor(
            name="storage_profiles",
            key_field="name",
            exclusivity_field="default",
            compared_fields=("limit", "enabled", "default"),
        ),
    ),
    group_order=("core", "metadata", "sizing_policies", "default_sizing_policy"),
)

VDC_GROUP = ResourceDescriptor(
    kind="vdc_group",
    attributes=_attrs(
        _mutable("name"),
        _immutable("org"),
        _immutable("starting_vdc_id"),
        _mutable("description"),
        _mutable("participating_vdc_ids"),
        _mutable("dfw_enabled", "firewall"),
        _mutable("default_policy_status", "firewall"),
        _computed("status"),
    ),
    group_order=("core", "firewall"),
)

CATALOG = ResourceDescriptor(
    kind="catalog",
    attributes=_attrs(
        _immutable("name"),
        _immutable("org"),
        _mutable("description"),
        _mutable("storage_profile_id"),
        _mutable("publish_enabled", "publish"),
        _mutable("cache_enabled", "publish"),
        _mutable("preserve_identity_information", "publish"),
        _mutable("password", "publish"),
        METADATA,
        _computed("href"),
        _computed("created"),
        _computed("catalog_version"),
        _computed("number_of_vapp_templates"),
        _computed("number_of_media"),
        _computed("publish_subscription_url"),
    ),
    group_order=("core", "publish", "metadata"),
)

CATALOG_ACCESS_CONTROL = ResourceDescriptor(
    kind="catalog_access_control",
    attributes=_attrs(
        _immutable("catalog_id"),
        _mutable("shared_with_everyone"),
        _mutable("everyone_access_level"),
        _mutable("read_only_shared_with_all_orgs"),
    ),
    collections=(
        CollectionDescriptor(
            name="shared_with",
            key_field="subject_id",
            compared_fields=("access_level",),
        ),
    ),
)

VAPP = ResourceDescriptor(
    kind="vapp",
    attributes=_attrs(
        _mutable("name"),
        _immutable("org"),
        _immutable("vdc"),
        _mutable("description"),
        _mutable("runtime_lease_in_sec", "lease", meaningful_zero=True),
        _mutable("storage_lease_in_sec", "lease", meaningful_zero=True),
        METADATA,
        _mutable("power_on", "power"),
        _computed("href"),
        _computed("status"),
    ),
    group_order=("core", "lease", "metadata", "power"),
    lock_scopes=self_scope,
)

VM = ResourceDescriptor(
    kind="vm",
    attributes=_attrs(
        _mutable("name"),
        _immutable("vapp_name"),
        _immutable("catalog_name"),
        _immutable("template_name"),
        _mutable("computer_name"),
        _mutable("description"),
        _mutable("memory", "hardware"),
        _mutable("cpus", "hardware"),
        _mutable("cpu_cores", "hardware"),
        _mutable("storage_profile", "storage"),
        _mutable("sizing_policy_id", "policies"),
        _mutable("placement_policy_id", "policies"),
        METADATA,
        _mutable("power_on", "power"),
        _computed("href"),
        _computed("status"),
    ),
    collections=(
        CollectionDescriptor(
            name="networks",
            key_field="name",
            exclusivity_field="is_primary",
            ordered=True,
            compared_fields=("ip_allocation_mode", "ip", "is_primary", "connected"),
        ),
    ),
    group_order=("core", "storage", "policies", "hardware", "metadata", "power"),
    lock_scopes=parent_scope,
)

NETWORK_ISOLATED = ResourceDescriptor(
    kind="network_isolated",
    attributes=_attrs(
        _immutable("owner_id"),
        _mutable("name"),
        _mutable("description"),
        _immutable("gateway"),
        _immutable("prefix_length"),
        _mutable("dns1"),
        _mutable("dns2"),
        _mutable("dns_suffix"),
        _mutable("is_shared"),
        METADATA,
    ),
    collections=(
        CollectionDescriptor(name="static_ip_pool", key_field="start_address"),
    ),
    group_order=("core", "metadata"),
    lock_scopes=owner_scopes,
)

EDGE_GATEWAY = ResourceDescriptor(
    kind="edge_gateway",
    attributes=_attrs(
        _mutable("owner_id"),
        _immutable("external_network_id"),
        _mutable("name"),
        _mutable("description"),
        _mutable("dedicate_external_network"),
        _mutable("total_allocated_ip_count", meaningful_zero=True),
        _computed("primary_ip"),
        _computed("used_ip_count"),
    ),
    collections=(
        CollectionDescriptor(
            name="subnets",
            key_field="gateway",
            exclusivity_field="primary",
            compared_fields=("prefix_length", "primary"),
        ),
    ),
    lock_scopes=owner_scopes,
)

NAT_RULE = ResourceDescriptor(
    kind="nat_rule",
    attributes=_attrs(
        _immutable("edge_gateway_id"),
        _immutable("rule_type"),
        _mutable("name"),
        _mutable("description"),
        _mutable("external_address"),
        _mutable("internal_address"),
        _mutable("dnat_external_port"),
        _mutable("enabled"),
        _mutable("logging"),
        _mutable("priority", meaningful_zero=True),
    ),
    lock_scopes=gateway_child_scopes,
)

ALB_SETTINGS = ResourceDescriptor(
    kind="alb_settings",
    attributes=_attrs(
        _immutable("edge_gateway_id"),
        _mutable("is_active"),
        _mutable("service_engine_group_id"),
        _mutable("supported_feature_set"),
        _mutable("ipv6_service_network_specification"),
    ),
    lock_scopes=gateway_child_scopes,
)

DHCP_FORWARDING = ResourceDescriptor(
    kind="dhcp_forwarding",
    attributes=_attrs(
        _immutable("edge_gateway_id"),
        _mutable("enabled"),
        _mutable("dhcp_servers"),
    ),
    lock_scopes=gateway_child_scopes,
)

RDE_TYPE = ResourceDescriptor(
    kind="rde_type",
    attributes=_attrs(
        _immutable("vendor"),
        _immutable("nss"),
        _immutable("version"),
        _mutable("name"),
        _mutable("description"),
        _mutable("interface_ids"),
        _mutable("schema"),
        _mutable("external_id"),
        _mutable("hooks"),
        _computed("inherited_version"),
        _computed("readonly"),
    ),
)

VM_PLACEMENT_POLICY = ResourceDescriptor(
    kind="vm_placement_policy",
    attributes=_attrs(
        _mutable("name"),
        _mutable("description"),
        _immutable("provider_vdc_id"),
        _mutable("vm_group_ids"),
        _mutable("logical_vm_group_ids"),
    ),
)


DESCRIPTORS: dict[str, ResourceDescriptor] = {
    descriptor.kind: descriptor
    for descriptor in (
        ORG,
        VDC,
        VDC_GROUP,
        CATALOG,
        CATALOG_ACCESS_CONTROL,
        VAPP,
        VM,
        NETWORK_ISOLATED,
        EDGE_GATEWAY,
        NAT_RULE,
        ALB_SETTINGS,
        DHCP_FORWARDING,
        RDE_TYPE,
        VM_PLACEMENT_POLICY,
    )
}


def get_descriptor(kind: str) -> ResourceDescriptor:
    """Get the descriptor registered for a resource kind.

    Raises:
        UnknownKindError: If the kind is not registered.
    """
    descriptor = DESCRIPTORS.get(kind)
    if descriptor is None:
        raise UnknownKindError(f"Unknown resource kind '{kind}'. Valid kinds: {sorted(DESCRIPTORS)}")
    return descriptor
