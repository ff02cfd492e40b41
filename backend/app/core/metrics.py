from collections import defaultdict
from threading import Lock
import re

_metrics_lock = Lock()
_counters: dict[str, dict[tuple[tuple[str, str], ...], int]] = defaultdict(dict)

METRIC_DESCRIPTIONS: dict[str, str] = {
    "http_requests_total": "HTTP requests served.",
    "http_errors_total": "HTTP error responses (4xx/5xx).",
    "auth_login_total": "Login attempts evaluated.",
    "auth_login_result_total": "Login attempts by outcome.",
    "auth_verify_total": "One-time code verifications.",
    "auth_verify_result_total": "One-time code verifications by outcome.",
    "auth_mfa_change_total": "MFA enable/disable confirmations.",
    "auth_password_change_total": "Password changes and resets.",
    "admin_unlock_total": "Accounts unlocked by an administrator.",
    "housekeeping_pruned_total": "Security records removed by housekeeping.",
}


def _normalize_labels(labels: dict[str, str] | None) -> tuple[tuple[str, str], ...]:
    if not labels:
        return tuple()
    return tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def increment_counter(name: str, value: int = 1, **labels: str) -> None:
    key = _normalize_labels(labels)
    with _metrics_lock:
        current = _counters[name].get(key, 0)
        _counters[name][key] = current + int(value)


def counter_value(name: str, **labels: str) -> int:
    key = _normalize_labels(labels)
    with _metrics_lock:
        return int(_counters.get(name, {}).get(key, 0))


def snapshot_metrics() -> dict[str, list[dict]]:
    with _metrics_lock:
        result: dict[str, list[dict]] = {}
        for metric_name, items in _counters.items():
            result[metric_name] = [
                {"labels": {k: v for k, v in label_key}, "value": value}
                for label_key, value in items.items()
            ]
        return result


def _sanitize_metric_name(name: str) -> str:
    clean = re.sub(r"[^a-zA-Z0-9_:]", "_", name)
    if not re.match(r"^[a-zA-Z_:]", clean):
        clean = f"metric_{clean}"
    return clean


def _escape_label_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def prometheus_text() -> str:
    lines: list[str] = []
    with _metrics_lock:
        for raw_name, items in sorted(_counters.items(), key=lambda x: x[0]):
            name = _sanitize_metric_name(raw_name)
            description = METRIC_DESCRIPTIONS.get(raw_name)
            if description:
                lines.append(f"# HELP {name} {description}")
            lines.append(f"# TYPE {name} counter")
            for label_key, value in sorted(items.items()):
                if label_key:
                    labels = ",".join(f'{k}="{_escape_label_value(v)}"' for k, v in label_key)
                    lines.append(f"{name}{{{labels}}} {int(value)}")
                else:
                    lines.append(f"{name} {int(value)}")
    return "\n".join(lines) + "\n"
