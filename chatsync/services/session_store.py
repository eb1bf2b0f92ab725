import json
import logging
import os
import threading
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

SESSION_COOKIE_KEY = "session_cookie"
USER_ID_KEY = "user_id"


class SessionStore:
    """
    Persiste la cookie de sesión (capturada del flujo OAuth externo) y el
    último user id. Lecturas síncronas: el cliente HTTP y el socket la leen
    antes de cada uso.
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

    def _read(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError):
            logger.exception("No se pudo leer la sesión en %s", self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, Any]) -> None:
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f)
        os.replace(tmp_path, self.path)

    def _update(self, key: str, value: str) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def save(self, credential: str) -> None:
        self._update(SESSION_COOKIE_KEY, credential)

    def get(self) -> Optional[str]:
        return self._read().get(SESSION_COOKIE_KEY) or None

    def save_user_id(self, user_id: str) -> None:
        self._update(USER_ID_KEY, user_id)

    def get_user_id(self) -> Optional[str]:
        return self._read().get(USER_ID_KEY) or None

    def has_session(self) -> bool:
        return self.get() is not None

    def clear(self) -> None:
        with self._lock:
            if os.path.exists(self.path):
                os.remove(self.path)
