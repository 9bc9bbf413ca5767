import requests
from typing import Optional


class TrackerClient:
    """Simple REST client for the tracker API."""

    def __init__(self, base_url: str = "http://localhost:8000", session=None) -> None:
        self.base_url = base_url.rstrip("/")
        self.http = session or requests.Session()

    @staticmethod
    def _params(params: Optional[dict]) -> dict:
        return {k: v for k, v in (params or {}).items() if v is not None}

    def _request(self, method: str, path: str, params: Optional[dict] = None):
        resp = self.http.request(
            method, f"{self.base_url}{path}", params=self._params(params)
        )
        resp.raise_for_status()
        return resp.json()

    def health(self) -> dict:
        return self._request("GET", "/health")

    def current_session(self) -> Optional[dict]:
        return self._request("GET", "/session")

    def start_session(
        self,
        workout_type: str,
        exercises: list[str],
        name: Optional[str] = None,
        replace: bool = False,
    ) -> dict:
        """Start a workout. With ``replace`` an active workout is ended first."""
        resp = self.http.post(
            f"{self.base_url}/session/start",
            params=self._params(
                {"workout_type": workout_type, "exercises": "|".join(exercises), "name": name}
            ),
        )
        if resp.status_code == 409 and replace:
            token = resp.json()["detail"]["token"]
            return self.confirm_start(token)
        resp.raise_for_status()
        return resp.json()

    def confirm_start(self, token: str) -> dict:
        return self._request("POST", f"/session/start/{token}/confirm")

    def cancel_start(self, token: str) -> dict:
        return self._request("POST", f"/session/start/{token}/cancel")

    def add_set(self, exercise_id: str, previous_set_id: Optional[str] = None) -> str:
        data = self._request(
            "POST",
            "/session/sets",
            params={"exercise_id": exercise_id, "previous_set_id": previous_set_id},
        )
        return data["id"]

    def update_set(self, set_id: str, **fields: float) -> dict:
        return self._request("PUT", f"/session/sets/{set_id}", params=fields)

    def complete_set(self, set_id: str) -> dict:
        return self._request("POST", f"/session/sets/{set_id}/complete")

    def skip_set(self, set_id: str) -> dict:
        return self._request("POST", f"/session/sets/{set_id}/skip")

    def end_session(self) -> dict:
        return self._request("POST", "/session/end")

    def cancel_session(self) -> dict:
        return self._request("DELETE", "/session")

    def list_workouts(self, date: Optional[str] = None) -> list[dict]:
        return self._request("GET", "/workouts", params={"date": date})

    def schedule_workout(self, date: str, workout_type: str, **params: str) -> dict:
        return self._request(
            "POST", "/schedule", params={"date": date, "workout_type": workout_type, **params}
        )

    def day_overview(self, date: str) -> dict:
        return self._request("GET", f"/schedule/day/{date}")

    def reconcile(self) -> list[str]:
        return self._request("POST", "/schedule/reconcile")["missed"]

    def stats(self) -> dict:
        return self._request("GET", "/stats")
