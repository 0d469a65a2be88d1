from __future__ import annotations
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field


class TenantConfigRecord(BaseModel):
    """
    One enabled row of tenant_ops.tenant_configs.

    The five location columns are mandatory and non-empty; a row that
    violates this fails validation and, with it, the whole request.
    Cassandra returns an empty map column as null, so labels/params are
    None rather than {} when unset.
    """

    model_config = ConfigDict(frozen=True)

    tenant_id: str = Field(min_length=1)
    namespace: str = Field(min_length=1)
    target_cluster: str = Field(min_length=1)
    repo_url: str = Field(min_length=1)
    repo_path: str = Field(min_length=1)

    labels: Optional[Dict[str, str]] = None
    # Arbitrary template parameters, echoed nested and flattened.
    params: Optional[Dict[str, str]] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "TenantConfigRecord":
        # Driver map columns come back as OrderedMapSerializedKey.
        data = {
            key: dict(value) if isinstance(value, Mapping) else value
            for key, value in row.items()
        }
        return cls.model_validate(data, strict=True)


class InputWrapper(BaseModel):
    # Open-ended plugin parameter bag; only the filter keys are read.
    parameters: Dict[str, Any] = Field(default_factory=dict)


class PluginInput(BaseModel):
    """Request body posted by the ApplicationSet controller. Unknown fields are ignored."""

    model_config = ConfigDict(populate_by_name=True)

    application_set_name: Optional[str] = Field(default=None, alias="applicationSetName")
    input: InputWrapper = Field(default_factory=InputWrapper)


class PluginOutput(BaseModel):
    # One map per tenant
    parameters: List[Dict[str, Any]] = Field(default_factory=list)


class PluginResponse(BaseModel):
    output: PluginOutput


def assemble_response(maps: List[Dict[str, Any]]) -> PluginResponse:
    """Wrap per-tenant maps in the plugin envelope; no validation or dedup."""
    return PluginResponse(output=PluginOutput(parameters=maps))
