from __future__ import annotations

import logging
from datetime import date
from typing import Any, Callable, Iterable, TypeVar

import requests

from gaply.errors import RemoteError, ValidationError
from gaply.models import Gap, RemoteConfig, Task, WorkPreferences

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _items(payload: Any, key: str) -> list[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict) and isinstance(payload.get(key), list):
        return payload[key]
    return []


def _parse_all(items: Iterable[Any], parser: Callable[[Any], T], kind: str) -> list[T]:
    parsed: list[T] = []
    for item in items:
        try:
            parsed.append(parser(item))
        except (AttributeError, TypeError, ValueError, ValidationError) as exc:
            logger.warning("Skipping malformed remote %s: %s", kind, exc)
    return parsed


class RemoteClient:
    """Bearer-token JSON client for the per-user remote copy of planner data."""

    def __init__(self, config: RemoteConfig) -> None:
        self.config = config

    def is_configured(self) -> bool:
        return bool(self.config.base_url and self.config.api_token)

    def _endpoint(self, path: str) -> str:
        return f"{self.config.base_url.rstrip('/')}/{path.lstrip('/')}"

    def _headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.config.api_token}",
            "Content-Type": "application/json",
        }
        if self.config.user_id:
            headers["X-User-Id"] = self.config.user_id
        return headers

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        payload: Any = None,
    ) -> Any:
        if not self.is_configured():
            raise RemoteError("Remote config incomplete: base_url/api_token required.")
        try:
            response = requests.request(
                method,
                self._endpoint(path),
                headers=self._headers(),
                params=params,
                json=payload,
                timeout=self.config.timeout_seconds,
            )
            response.raise_for_status()
            if not response.content:
                return None
            return response.json()
        except requests.RequestException as exc:
            raise RemoteError(f"{method} {path} failed: {exc}") from exc
        except ValueError as exc:
            raise RemoteError(f"{method} {path} returned invalid JSON") from exc

    def get_tasks(self) -> list[Task]:
        return _parse_all(_items(self._request("GET", "/tasks"), "tasks"), Task.from_dict, "task")

    def save_tasks(self, tasks: Iterable[Task], replace_all: bool = True) -> None:
        items = list(tasks)
        if replace_all:
            self._request("POST", "/tasks", payload={"tasks": [task.to_dict() for task in items]})
            return
        for task in items:
            self._request("PUT", f"/tasks/{task.id}/sync", payload=task.to_dict())

    def get_gaps(self, target: date) -> list[Gap]:
        payload = self._request("GET", "/gaps", params={"date": target.isoformat()})
        return _parse_all(_items(payload, "gaps"), Gap.from_dict, "gap")

    def get_all_gaps(self) -> dict[date, list[Gap]]:
        grouped: dict[date, list[Gap]] = {}
        for gap in _parse_all(_items(self._request("GET", "/gaps"), "gaps"), Gap.from_dict, "gap"):
            grouped.setdefault(gap.date, []).append(gap)
        return grouped

    def save_gaps(self, gaps: Iterable[Gap], target: date) -> None:
        self._request(
            "POST",
            "/gaps/create",
            payload={"date": target.isoformat(), "gaps": [gap.to_dict() for gap in gaps]},
        )

    def get_preferences(self) -> WorkPreferences | None:
        payload = self._request("GET", "/preferences")
        if isinstance(payload, dict) and isinstance(payload.get("preferences"), dict):
            payload = payload["preferences"]
        if not isinstance(payload, dict) or not payload:
            return None
        return WorkPreferences.from_dict(payload)

    def save_preferences(self, prefs: WorkPreferences) -> None:
        self._request("POST", "/preferences", payload=prefs.to_dict())
