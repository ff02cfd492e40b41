from typing import Literal

Permission = Literal[
    "security.view",
    "security.manage",
    "metrics.view",
]

PERMISSIONS_BY_ROLE: dict[str, set[Permission]] = {
    "user": set(),
    "landlord": set(),
    "admin": {"security.view", "security.manage", "metrics.view"},
}


def normalize_role(role: str | None) -> str:
    value = (role or "").strip().lower()
    if value in PERMISSIONS_BY_ROLE:
        return value
    return "user"


def has_permission(role: str | None, permission: Permission) -> bool:
    normalized = normalize_role(role)
    return permission in PERMISSIONS_BY_ROLE.get(normalized, set())


PERMISSION_LABELS: dict[Permission, str] = {
    "security.view": "View login history, alerts and risk snapshots",
    "security.manage": "Unlock accounts",
    "metrics.view": "View service metrics",
}


def permissions_matrix_payload() -> dict:
    role_order = ["user", "landlord", "admin"]
    return {
        "roles": [
            {"role": role, "permissions": sorted(PERMISSIONS_BY_ROLE.get(role, set()))}
            for role in role_order
        ],
        "permission_labels": PERMISSION_LABELS,
    }
