"""
Storage Key Scheme

Keys are stable and namespaced by tenant and entity. A key, once written,
is never written again with different bytes: every regenerated artifact
gets a fresh suffix.
"""

import re
import uuid
from roomview.core.exceptions import InvalidInputError
from roomview.core.storage import validate_key
from roomview.core.timestamps import utc_now

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def _safe(segment: str) -> str:
    """Product ids like gid://shop/Product/1 must stay one path segment."""
    return _UNSAFE.sub("_", segment).strip(".") or "_"


def _suffix() -> str:
    return f"{utc_now().strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:8]}"


def room_original_key(tenant_id: str, session_id: str) -> str:
    return f"tenants/{_safe(tenant_id)}/rooms/{session_id}/original.jpg"


def room_mask_key(tenant_id: str, session_id: str) -> str:
    return f"tenants/{_safe(tenant_id)}/rooms/{session_id}/mask-{_suffix()}.png"


def room_cleaned_key(tenant_id: str, session_id: str) -> str:
    return f"tenants/{_safe(tenant_id)}/rooms/{session_id}/cleaned-{_suffix()}.png"


def product_cutout_key(tenant_id: str, product_id: str, asset_id: str) -> str:
    return f"tenants/{_safe(tenant_id)}/products/{_safe(product_id)}/{asset_id}/cutout-{_suffix()}.png"


def render_output_key(tenant_id: str, job_id: str) -> str:
    return f"tenants/{_safe(tenant_id)}/renders/{job_id}/output.png"


def tenant_prefix(tenant_id: str) -> str:
    return f"tenants/{_safe(tenant_id)}/"


def ensure_tenant_key(tenant_id: str, storage_key: str, field: str = "key") -> str:
    """
    Accept a caller-supplied storage key only inside the caller's own
    namespace. Foreign keys are invalid input, not "not found", so their
    existence is never revealed to another tenant.
    """
    validate_key(storage_key)
    if not storage_key.startswith(tenant_prefix(tenant_id)):
        raise InvalidInputError("Storage key is outside the tenant's namespace", field=field)
    return storage_key
