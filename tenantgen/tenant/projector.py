from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

from tenantgen.tenant.models import TenantConfigRecord

logger = logging.getLogger(__name__)

FILTER_KEY_PARAM = "filterLabelKey"
FILTER_VALUE_PARAM = "filterLabelValue"


@dataclass(frozen=True)
class LabelFilter:
    """Exact, case-sensitive label equality: labels[key] == value."""

    key: str
    value: str

    def matches(self, record: TenantConfigRecord) -> bool:
        if not record.labels:
            return False
        return record.labels.get(self.key) == self.value


def label_filter_from_parameters(parameters: Mapping[str, Any]) -> Optional[LabelFilter]:
    """
    Extract the optional label filter from the plugin parameter bag.

    Both filterLabelKey and filterLabelValue must be strings; if either is
    absent or not a string the request is unfiltered (a half-specified
    filter is not rejected).
    """
    key = parameters.get(FILTER_KEY_PARAM)
    value = parameters.get(FILTER_VALUE_PARAM)
    if isinstance(key, str) and isinstance(value, str):
        return LabelFilter(key=key, value=value)
    if key is not None or value is not None:
        logger.debug(
            "Ignoring partial label filter (key=%r, value=%r)", key, value
        )
    return None


def to_parameter_map(record: TenantConfigRecord) -> Dict[str, Any]:
    """
    Flatten one record into the generator's parameter map.

    Fixed keys first, then the nested labels/params maps, then every params
    entry copied to the top level. The flattened entries are written last,
    so a param named like a fixed key (tenantId, path, params, ...) wins.
    """
    out: Dict[str, Any] = {
        "tenantId": record.tenant_id,
        "namespace": record.namespace,
        "cluster": record.target_cluster,
        "repoURL": record.repo_url,
        "path": record.repo_path,
    }
    if record.labels is not None:
        out["labels"] = dict(record.labels)
    if record.params is not None:
        out["params"] = dict(record.params)
        for key, value in record.params.items():
            out[key] = value
    return out


def project(
    records: Iterable[TenantConfigRecord],
    label_filter: Optional[LabelFilter] = None,
) -> List[Dict[str, Any]]:
    """Filter (optionally) and flatten records, preserving their order."""
    return [
        to_parameter_map(record)
        for record in records
        if label_filter is None or label_filter.matches(record)
    ]
