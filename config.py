import os
import yaml
import keyring
from keyring.errors import PasswordDeleteError

KEYRING_SERVICE = "gymtrack"
SECRET_PLACEHOLDER = "<keyring>"


class YamlConfig:
    """Tracker settings file.

    With ``ENCRYPT_SETTINGS=1`` the reminder webhook and other sensitive
    values are kept in the OS keyring and the YAML file only holds a
    placeholder for them.
    """

    SENSITIVE_KEYS = frozenset({"webhook_url"})

    def __init__(self, path: str | None = None) -> None:
        self.path = path or os.environ.get("GYMTRACK_SETTINGS", "settings.yaml")
        self.encrypt = os.environ.get("ENCRYPT_SETTINGS") == "1"
        self.service = KEYRING_SERVICE

    def _read(self) -> dict:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}

    def load(self) -> dict:
        data = self._read()
        for key in [k for k in self.SENSITIVE_KEYS if k in data]:
            secret = keyring.get_password(self.service, key) if self.encrypt else None
            if secret is not None:
                data[key] = secret
            elif data[key] == SECRET_PLACEHOLDER:
                # placeholder without a readable secret behind it
                data.pop(key)
        return data

    def save(self, data: dict) -> None:
        out = {k: v for k, v in data.items() if v is not None}
        if self.encrypt:
            for key in self.SENSITIVE_KEYS:
                if key in out:
                    keyring.set_password(self.service, key, str(out[key]))
                    out[key] = SECRET_PLACEHOLDER
                else:
                    try:
                        keyring.delete_password(self.service, key)
                    except PasswordDeleteError:
                        pass
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump(out, f)
