from typing import Optional

from pydantic import BaseModel, ValidationError

class SettingsSchema(BaseModel):
    default_body_weight: float = 70.0
    notification_window_seconds: int = 60
    reconcile_interval_seconds: int = 60
    cardio_types: list[str] = ["Cardio", "Slide Board"]
    notifications_enabled: bool = True
    webhook_url: Optional[str] = None

def validate_settings(data: dict) -> SettingsSchema:
    try:
        return SettingsSchema(**data)
    except ValidationError as e:
        raise ValueError(str(e))
