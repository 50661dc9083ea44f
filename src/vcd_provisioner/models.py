"""Pydantic models for resource specifications with validation.

These models provide:
1. Type-safe YAML parsing, one class per resource kind
2. Validation at the boundary (fail fast, fail loudly)
3. Clean transformation to the desired attribute mapping the planner diffs

Metadata has a single canonical representation, a list of key/value
entries (metadata_entry). The legacy flat "metadata" mapping is still
accepted as input and converted on the way in.
"""

from __future__ import annotations

import ipaddress
import re
from typing import Annotated, Any, ClassVar, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

# =============================================================================
# Base Models
# =============================================================================


class MetadataEntry(BaseModel):
    """One metadata key/value pair."""

    model_config = {"extra": "forbid"}

    key: Annotated[str, Field(min_length=1)]
    value: str
    type: Literal["MetadataStringValue", "MetadataNumberValue", "MetadataBooleanValue"] = (
        "MetadataStringValue"
    )
    user_access: Literal["READWRITE", "READONLY", "PRIVATE"] = "READWRITE"


class BaseResourceSpec(BaseModel):
    """Base specification shared by every resource kind."""

    model_config = {"extra": "forbid"}  # Reject unknown fields

    kind: ClassVar[str] = ""

    def to_attributes(self) -> dict[str, Any]:
        """Convert to the desired attribute mapping."""
        return self.model_dump(exclude_none=True)


class MetadataMixin(BaseModel):
    """Adds canonical metadata entries, accepting the legacy flat mapping."""

    model_config = {"extra": "forbid"}

    metadata_entry: list[MetadataEntry] | None = None

    @model_validator(mode="before")
    @classmethod
    def convert_legacy_metadata(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "metadata" not in data:
            return data
        data = dict(data)
        legacy = data.pop("metadata")
        if data.get("metadata_entry") is not None:
            raise ValueError("metadata and metadata_entry are mutually exclusive, use metadata_entry")
        if not isinstance(legacy, dict):
            raise ValueError("metadata must be a mapping of strings")
        data["metadata_entry"] = [{"key": str(k), "value": str(v)} for k, v in legacy.items()]
        return data

    @field_validator("metadata_entry")
    @classmethod
    def validate_unique_keys(cls, v: list[MetadataEntry] | None) -> list[MetadataEntry] | None:
        if v is not None:
            keys = [entry.key for entry in v]
            duplicates = sorted({k for k in keys if keys.count(k) > 1})
            if duplicates:
                raise ValueError(f"duplicate metadata keys: {duplicates}")
        return v


def _exactly_one(records: list[Any], flag: str, collection: str) -> None:
    if records and sum(1 for r in records if getattr(r, flag)) != 1:
        raise ValueError(f"exactly one member of {collection} must set {flag}")


def _unique(values: list[str], what: str) -> None:
    duplicates = sorted({v for v in values if values.count(v) > 1})
    if duplicates:
        raise ValueError(f"duplicate {what}: {duplicates}")


# =============================================================================
# Organization and VDC
# =============================================================================


class OrgSpec(MetadataMixin, BaseResourceSpec):
    """Organization specification."""

    kind: ClassVar[str] = "org"

    name: Annotated[str, Field(min_length=1)]
    full_name: Annotated[str, Field(min_length=1)]
    description: str | None = None
    is_enabled: bool = True
    deployed_vm_quota: Annotated[int, Field(ge=0)] | None = None
    stored_vm_quota: Annotated[int, Field(ge=0)] | None = None
    can_publish_catalogs: bool | None = None


class StorageProfileConfig(BaseModel):
    """Storage profile of a VDC."""

    model_config = {"extra": "forbid"}

    name: Annotated[str, Field(min_length=1)]
    limit: Annotated[int, Field(ge=0)] = 0  # MB, 0 means unlimited
    enabled: bool = True
    default: bool = False


ALLOCATION_MODELS = {"AllocationVApp", "AllocationPool", "ReservationPool", "Flex"}


class VdcSpec(MetadataMixin, BaseResourceSpec):
    """Virtual datacenter specification."""

    kind: ClassVar[str] = "vdc"

    name: Annotated[str, Field(min_length=1)]
    org: Annotated[str, Field(min_length=1)]
    provider_vdc_name: Annotated[str, Field(min_length=1)]
    allocation_model: str
    description: str | None = None
    cpu_allocated: Annotated[int, Field(ge=0)] | None = None
    cpu_limit: Annotated[int, Field(ge=0)] | None = None
    memory_allocated: Annotated[int, Field(ge=0)] | None = None
    memory_limit: Annotated[int, Field(ge=0)] | None = None
    cpu_guaranteed: Annotated[float, Field(ge=0, le=100)] | None = None
    memory_guaranteed: Annotated[float, Field(ge=0, le=100)] | None = None
    cpu_speed: Annotated[int, Field(gt=0)] | None = None
    network_quota: Annotated[int, Field(ge=0)] | None = None
    vm_quota: Annotated[int, Field(ge=0)] | None = None
    enabled: bool = True
    enable_thin_provisioning: bool | None = None
    enable_fast_provisioning: bool | None = None
    network_pool_name: str | None = None
    elasticity: bool | None = None
    include_vm_memory_overhead: bool | None = None
    vm_sizing_policy_ids: list[str] | None = None
    default_vm_sizing_policy_id: str | None = None
    storage_profiles: Annotated[list[StorageProfileConfig], Field(min_length=1)]

    @field_validator("allocation_model")
    @classmethod
    def validate_allocation_model(cls, v: str) -> str:
        if v not in ALLOCATION_MODELS:
            raise ValueError(f"allocation_model must be one of {sorted(ALLOCATION_MODELS)}")
        return v

    @model_validator(mode="after")
    def validate_spec(self) -> VdcSpec:
        _unique([p.name for p in self.storage_profiles], "storage profile names")
        _exactly_one(self.storage_profiles, "default", "storage_profiles")
        if (self.elasticity is not None or self.include_vm_memory_overhead is not None) and (
            self.allocation_model != "Flex"
        ):
            raise ValueError("elasticity and include_vm_memory_overhead require allocation_model Flex")
        if self.default_vm_sizing_policy_id is not None:
            if not self.vm_sizing_policy_ids:
                raise ValueError("default_vm_sizing_policy_id requires vm_sizing_policy_ids")
            if self.default_vm_sizing_policy_id not in self.vm_sizing_policy_ids:
                raise ValueError("default_vm_sizing_policy_id must be one of vm_sizing_policy_ids")
        return self


class VdcGroupSpec(BaseResourceSpec):
    """VDC Group specification."""

    kind: ClassVar[str] = "vdc_group"

    name: Annotated[str, Field(min_length=1)]
    org: Annotated[str, Field(min_length=1)]
    starting_vdc_id: Annotated[str, Field(min_length=1)]
    description: str | None = None
    participating_vdc_ids: Annotated[list[str], Field(min_length=1)]
    dfw_enabled: bool | None = None
    default_policy_status: bool | None = None

    @model_validator(mode="after")
    def validate_spec(self) -> VdcGroupSpec:
        _unique(self.participating_vdc_ids, "participating VDC ids")
        if self.starting_vdc_id not in self.participating_vdc_ids:
            raise ValueError("starting_vdc_id must be one of participating_vdc_ids")
        if self.default_policy_status is not None and not self.dfw_enabled:
            raise ValueError("default_policy_status requires dfw_enabled")
        return self


# =============================================================================
# Catalogs
# =============================================================================


class CatalogSpec(MetadataMixin, BaseResourceSpec):
    """Catalog specification."""

    kind: ClassVar[str] = "catalog"

    name: Annotated[str, Field(min_length=1)]
    org: Annotated[str, Field(min_length=1)]
    description: str | None = None
    storage_profile_id: str | None = None
    publish_enabled: bool = False
    cache_enabled: bool = False
    preserve_identity_information: bool = False
    password: str | None = None

    @model_validator(mode="after")
    def validate_spec(self) -> CatalogSpec:
        if not self.publish_enabled and (self.cache_enabled or self.password):
            raise ValueError("cache_enabled and password require publish_enabled")
        return self


ACCESS_LEVELS = {"ReadOnly", "Change", "FullControl"}


class SharedWithConfig(BaseModel):
    """One access-control entry."""

    model_config = {"extra": "forbid"}

    subject_id: Annotated[str, Field(min_length=1)]
    access_level: str

    @field_validator("access_level")
    @classmethod
    def validate_access_level(cls, v: str) -> str:
        if v not in ACCESS_LEVELS:
            raise ValueError(f"access_level must be one of {sorted(ACCESS_LEVELS)}")
        return v


class CatalogAccessControlSpec(BaseResourceSpec):
    """Catalog sharing specification."""

    kind: ClassVar[str] = "catalog_access_control"

    catalog_id: Annotated[str, Field(min_length=1)]
    shared_with_everyone: bool
    everyone_access_level: str | None = None
    read_only_shared_with_all_orgs: bool | None = None
    shared_with: list[SharedWithConfig] | None = None

    @model_validator(mode="after")
    def validate_spec(self) -> CatalogAccessControlSpec:
        if self.shared_with_everyone:
            if self.everyone_access_level is None:
                raise ValueError("everyone_access_level is required when shared_with_everyone")
            if self.everyone_access_level not in ACCESS_LEVELS:
                raise ValueError(f"everyone_access_level must be one of {sorted(ACCESS_LEVELS)}")
            if self.shared_with:
                raise ValueError("shared_with conflicts with shared_with_everyone")
        elif self.everyone_access_level is not None:
            raise ValueError("everyone_access_level requires shared_with_everyone")
        if self.shared_with:
            _unique([s.subject_id for s in self.shared_with], "subjects in shared_with")
        return self


# =============================================================================
# vApps and VMs
# =============================================================================


class VappSpec(MetadataMixin, BaseResourceSpec):
    """vApp specification."""

    kind: ClassVar[str] = "vapp"

    name: Annotated[str, Field(min_length=1)]
    org: Annotated[str, Field(min_length=1)]
    vdc: Annotated[str, Field(min_length=1)]
    description: str | None = None
    runtime_lease_in_sec: Annotated[int, Field(ge=0)] | None = None
    storage_lease_in_sec: Annotated[int, Field(ge=0)] | None = None
    power_on: bool = False

    @field_validator("runtime_lease_in_sec", "storage_lease_in_sec")
    @classmethod
    def validate_lease(cls, v: int | None) -> int | None:
        # 0 means "never expires", anything else must be at least an hour
        if v is not None and 0 < v < 3600:
            raise ValueError("lease must be 0 (never expires) or at least 3600 seconds")
        return v


IP_ALLOCATION_MODES = {"POOL", "DHCP", "MANUAL", "NONE"}


class VmNetworkConfig(BaseModel):
    """Network connection of a VM."""

    model_config = {"extra": "forbid"}

    name: Annotated[str, Field(min_length=1)]
    ip_allocation_mode: str = "POOL"
    ip: str | None = None
    is_primary: bool = False
    connected: bool = True

    @model_validator(mode="after")
    def validate_ip(self) -> VmNetworkConfig:
        if self.ip_allocation_mode not in IP_ALLOCATION_MODES:
            raise ValueError(f"ip_allocation_mode must be one of {sorted(IP_ALLOCATION_MODES)}")
        if self.ip_allocation_mode == "MANUAL" and not self.ip:
            raise ValueError("ip is required with ip_allocation_mode MANUAL")
        if self.ip is not None:
            ipaddress.ip_address(self.ip)
        return self


class VmSpec(MetadataMixin, BaseResourceSpec):
    """VM specification."""

    kind: ClassVar[str] = "vm"

    name: Annotated[str, Field(min_length=1)]
    vapp_name: Annotated[str, Field(min_length=1)]
    catalog_name: str | None = None
    template_name: str | None = None
    computer_name: str | None = None
    description: str | None = None
    memory: Annotated[int, Field(ge=4)] | None = None  # MB
    cpus: Annotated[int, Field(ge=1)] | None = None
    cpu_cores: Annotated[int, Field(ge=1)] | None = None
    storage_profile: str | None = None
    sizing_policy_id: str | None = None
    placement_policy_id: str | None = None
    power_on: bool = True
    networks: list[VmNetworkConfig] | None = None

    @model_validator(mode="after")
    def validate_spec(self) -> VmSpec:
        if (self.catalog_name is None) != (self.template_name is None):
            raise ValueError("catalog_name and template_name must be set together")
        if self.cpus is not None and self.cpu_cores is not None and self.cpus % self.cpu_cores:
            raise ValueError("cpus must be a multiple of cpu_cores")
        if self.networks:
            _unique([n.name for n in self.networks], "network names")
            _exactly_one(self.networks, "is_primary", "networks")
        return self


# =============================================================================
# Networking
# =============================================================================


class IpRangeConfig(BaseModel):
    """Static IP pool range."""

    model_config = {"extra": "forbid"}

    start_address: str
    end_address: str

    @model_validator(mode="after")
    def validate_range(self) -> IpRangeConfig:
        start = ipaddress.ip_address(self.start_address)
        end = ipaddress.ip_address(self.end_address)
        if start.version != end.version or start > end:
            raise ValueError(f"invalid IP range {self.start_address}-{self.end_address}")
        return self


class NetworkIsolatedSpec(MetadataMixin, BaseResourceSpec):
    """Isolated network specification (owned by a VDC or a VDC Group)."""

    kind: ClassVar[str] = "network_isolated"

    owner_id: Annotated[str, Field(min_length=1)]
    name: Annotated[str, Field(min_length=1)]
    description: str | None = None
    gateway: str
    prefix_length: Annotated[int, Field(ge=1, le=128)]
    dns1: str | None = None
    dns2: str | None = None
    dns_suffix: str | None = None
    is_shared: bool | None = None
    static_ip_pool: list[IpRangeConfig] | None = None

    @model_validator(mode="after")
    def validate_spec(self) -> NetworkIsolatedSpec:
        network = ipaddress.ip_network(f"{self.gateway}/{self.prefix_length}", strict=False)
        for pool in self.static_ip_pool or []:
            for address in (pool.start_address, pool.end_address):
                if ipaddress.ip_address(address) not in network:
                    raise ValueError(f"static_ip_pool address {address} is outside {network}")
        if self.static_ip_pool:
            _unique([p.start_address for p in self.static_ip_pool], "static pool start addresses")
        if self.is_shared and self.owner_id.startswith("urn:vcloud:vdcGroup:"):
            raise ValueError("networks owned by a VDC Group are shared implicitly, drop is_shared")
        return self


class EdgeSubnetConfig(BaseModel):
    """Uplink subnet of an edge gateway."""

    model_config = {"extra": "forbid"}

    gateway: str
    prefix_length: Annotated[int, Field(ge=1, le=128)]
    primary: bool = False


class EdgeGatewaySpec(BaseResourceSpec):
    """NSX-T edge gateway specification."""

    kind: ClassVar[str] = "edge_gateway"

    owner_id: Annotated[str, Field(min_length=1)]
    external_network_id: Annotated[str, Field(min_length=1)]
    name: Annotated[str, Field(min_length=1)]
    description: str | None = None
    dedicate_external_network: bool | None = None
    total_allocated_ip_count: Annotated[int, Field(ge=0)] | None = None
    subnets: list[EdgeSubnetConfig] | None = None

    @model_validator(mode="after")
    def validate_spec(self) -> EdgeGatewaySpec:
        if self.subnets:
            _unique([s.gateway for s in self.subnets], "subnet gateways")
            _exactly_one(self.subnets, "primary", "subnets")
        return self


NAT_RULE_TYPES = {"DNAT", "NO_DNAT", "SNAT", "NO_SNAT", "REFLEXIVE"}


class NatRuleSpec(BaseResourceSpec):
    """NAT rule on an edge gateway."""

    kind: ClassVar[str] = "nat_rule"

    edge_gateway_id: Annotated[str, Field(min_length=1)]
    rule_type: str
    name: Annotated[str, Field(min_length=1)]
    description: str | None = None
    external_address: str | None = None
    internal_address: str | None = None
    dnat_external_port: str | None = None
    enabled: bool = True
    logging: bool = False
    priority: int | None = None

    @model_validator(mode="after")
    def validate_spec(self) -> NatRuleSpec:
        if self.rule_type not in NAT_RULE_TYPES:
            raise ValueError(f"rule_type must be one of {sorted(NAT_RULE_TYPES)}")
        if self.rule_type in ("DNAT", "SNAT", "REFLEXIVE") and (
            not self.external_address or not self.internal_address
        ):
            raise ValueError(f"{self.rule_type} rules need external_address and internal_address")
        if self.dnat_external_port is not None and self.rule_type != "DNAT":
            raise ValueError("dnat_external_port is only valid for DNAT rules")
        return self


class AlbSettingsSpec(BaseResourceSpec):
    """ALB (load balancer) settings of an edge gateway."""

    kind: ClassVar[str] = "alb_settings"

    edge_gateway_id: Annotated[str, Field(min_length=1)]
    is_active: bool
    service_engine_group_id: str | None = None
    supported_feature_set: Literal["STANDARD", "PREMIUM"] | None = None
    ipv6_service_network_specification: str | None = None

    @model_validator(mode="after")
    def validate_spec(self) -> AlbSettingsSpec:
        if self.is_active and not self.service_engine_group_id:
            raise ValueError("service_engine_group_id is required when is_active")
        if self.ipv6_service_network_specification is not None:
            network = ipaddress.ip_network(self.ipv6_service_network_specification, strict=False)
            if network.version != 6:
                raise ValueError("ipv6_service_network_specification must be an IPv6 CIDR")
        return self


# Maximum DHCP servers accepted by the forwarding service
MAX_DHCP_SERVERS = 8


class DhcpForwardingSpec(BaseResourceSpec):
    """DHCP forwarding settings of an edge gateway."""

    kind: ClassVar[str] = "dhcp_forwarding"

    edge_gateway_id: Annotated[str, Field(min_length=1)]
    enabled: bool
    dhcp_servers: Annotated[list[str], Field(max_length=MAX_DHCP_SERVERS)] = Field(
        default_factory=list
    )

    @field_validator("dhcp_servers")
    @classmethod
    def validate_servers(cls, v: list[str]) -> list[str]:
        for server in v:
            ipaddress.ip_address(server)
        _unique(v, "DHCP servers")
        return v

    @model_validator(mode="after")
    def validate_spec(self) -> DhcpForwardingSpec:
        if self.enabled and not self.dhcp_servers:
            raise ValueError("dhcp_servers is required when enabled")
        return self


# =============================================================================
# Runtime Defined Entities and policies
# =============================================================================

_VERSION_PATTERN = re.compile(r"^\d+\.\d+\.\d+$")


class RdeTypeSpec(BaseResourceSpec):
    """Runtime Defined Entity type specification."""

    kind: ClassVar[str] = "rde_type"

    vendor: Annotated[str, Field(min_length=1)]
    nss: Annotated[str, Field(min_length=1)]
    version: str
    name: Annotated[str, Field(min_length=1)]
    description: str | None = None
    interface_ids: list[str] | None = None
    schema_: dict[str, Any] = Field(alias="schema")
    external_id: str | None = None
    hooks: dict[str, str] | None = None

    model_config = {"extra": "forbid", "populate_by_name": True}

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        if not _VERSION_PATTERN.match(v):
            raise ValueError("version must follow semantic versioning (e.g. 1.0.0)")
        return v

    def to_attributes(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True, by_alias=True)


class VmPlacementPolicySpec(BaseResourceSpec):
    """VM placement policy specification."""

    kind: ClassVar[str] = "vm_placement_policy"

    name: Annotated[str, Field(min_length=1)]
    description: str | None = None
    provider_vdc_id: Annotated[str, Field(min_length=1)]
    vm_group_ids: list[str] | None = None
    logical_vm_group_ids: list[str] | None = None

    @model_validator(mode="after")
    def validate_spec(self) -> VmPlacementPolicySpec:
        if not self.vm_group_ids and not self.logical_vm_group_ids:
            raise ValueError("at least one of vm_group_ids or logical_vm_group_ids is required")
        return self


# Registry mapping resource kinds to spec classes
SPEC_MODELS: dict[str, type[BaseResourceSpec]] = {
    model.kind: model
    for model in (
        OrgSpec,
        VdcSpec,
        VdcGroupSpec,
        CatalogSpec,
        CatalogAccessControlSpec,
        VappSpec,
        VmSpec,
        NetworkIsolatedSpec,
        EdgeGatewaySpec,
        NatRuleSpec,
        AlbSettingsSpec,
        DhcpForwardingSpec,
        RdeTypeSpec,
        VmPlacementPolicySpec,
    )
}


def get_spec_model(kind: str) -> type[BaseResourceSpec]:
    """Get the spec class for a resource kind.

    Raises:
        ValueError: If kind is not recognized.
    """
    spec_class = SPEC_MODELS.get(kind)
    if spec_class is None:
        valid_kinds = sorted(SPEC_MODELS.keys())
        raise ValueError(f"Unknown resource kind '{kind}'. Valid kinds: {valid_kinds}")
    return spec_class


# =============================================================================
# Resource set (spec file contents)
# =============================================================================


class ParentConfig(BaseModel):
    """Reference to the owning object of a resource."""

    model_config = {"extra": "forbid"}

    kind: Annotated[str, Field(min_length=1)]
    id: Annotated[str, Field(min_length=1)]
    name: str = ""
    owner: ParentConfig | None = None


class ResourceEntry(BaseModel):
    """One resource declared in a spec file."""

    model_config = {"extra": "forbid"}

    key: Annotated[str, Field(min_length=1, pattern=r"^[A-Za-z0-9][A-Za-z0-9_.\-]*$")]
    kind: str
    id: str | None = None  # adopt an existing remote object
    parent: ParentConfig | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        get_spec_model(v)
        return v

    def to_spec(self) -> BaseResourceSpec:
        """Validate attributes with the kind's spec model."""
        return get_spec_model(self.kind).model_validate(self.attributes)


class ResourceSetSpec(BaseModel):
    """Contents of a spec file: a list of resources."""

    model_config = {"extra": "forbid"}

    resources: list[ResourceEntry] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_unique_keys(self) -> ResourceSetSpec:
        _unique([r.key for r in self.resources], "resource keys")
        return self
