from __future__ import annotations

import uuid


def generate_run_id() -> str:
    """
    Назначение:
        Сгенерировать run_id для сессии синхронизации.
    """
    return str(uuid.uuid4())
