from datetime import datetime
from typing import Optional, TypedDict


class UserRecord(TypedDict):
    """Запись пользователя из базы данных"""
    id: str
    telegram_id: int
    username: Optional[str]
    first_name: Optional[str]
    last_name: Optional[str]
    created_at: datetime
    updated_at: datetime
