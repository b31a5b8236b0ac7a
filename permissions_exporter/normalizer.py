from typing import Any, Dict, Optional, Tuple

from permissions_exporter.models import PermissionRecord, RemoteItem


UNKNOWN_FILE_NAME = "Unknown"
INHERITED_WITHOUT_PATH = "(inherited)"


def _identity_fields(identity: Optional[Dict[str, Any]]) -> Tuple[str, str]:
    if not isinstance(identity, dict):
        return "", ""
    return identity.get("displayName") or "", identity.get("id") or ""


def resolve_grantee(permission: Dict[str, Any]) -> Tuple[str, str]:
    """Return (display name, identifier) for the permission's grantee.

    A direct user grant wins over a group grant, and both win over the
    identity list, of which only the first entry's user is considered.
    """
    granted_to = permission.get("grantedToV2")
    if isinstance(granted_to, dict):
        if isinstance(granted_to.get("user"), dict):
            return _identity_fields(granted_to["user"])
        if isinstance(granted_to.get("group"), dict):
            return _identity_fields(granted_to["group"])

    identities = permission.get("grantedToIdentitiesV2")
    if isinstance(identities, list) and identities:
        first = identities[0]
        if isinstance(first, dict) and isinstance(first.get("user"), dict):
            return _identity_fields(first["user"])

    return "", ""


def resolve_inheritance(permission: Dict[str, Any]) -> Tuple[bool, str]:
    reference = permission.get("inheritedFrom")
    if not isinstance(reference, dict) or not reference:
        return False, ""
    return True, reference.get("path") or reference.get("id") or INHERITED_WITHOUT_PATH


def normalize_permission(item: RemoteItem, permission: Dict[str, Any]) -> PermissionRecord:
    display_name, grantee_id = resolve_grantee(permission)
    is_inherited, inherited_from = resolve_inheritance(permission)
    roles = permission.get("roles") or []
    return PermissionRecord(
        file_name=item.name or UNKNOWN_FILE_NAME,
        web_url=item.web_url or "",
        file_id=item.id or "",
        permission_id=permission.get("id") or "",
        roles=tuple(str(role) for role in roles),
        granted_to_display_name=display_name,
        granted_to_email=grantee_id,
        is_inherited=is_inherited,
        inherited_from=inherited_from,
    )
