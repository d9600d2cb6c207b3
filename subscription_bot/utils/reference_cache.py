"""
Кэш недавно обработанных внешних ссылок (tx hash, payment id).
Только быстрый фильтр дублей, источник истины: уникальные индексы в БД.
"""
from collections import OrderedDict

from subscription_bot.constants import PROCESSED_CACHE_SIZE


class RecentReferences:
    """Ограниченный по размеру набор ссылок, самые старые вытесняются первыми"""

    def __init__(self, maxsize: int = PROCESSED_CACHE_SIZE):
        if maxsize <= 0:
            raise ValueError("maxsize должен быть положительным")
        self.maxsize = maxsize
        self._items: OrderedDict[str, None] = OrderedDict()

    def __contains__(self, reference: str) -> bool:
        return reference in self._items

    def __len__(self) -> int:
        return len(self._items)

    def add(self, reference: str) -> None:
        """Отмечает ссылку как обработанную"""
        self._items[reference] = None
        self._items.move_to_end(reference)
        while len(self._items) > self.maxsize:
            self._items.popitem(last=False)

    def clear(self) -> int:
        """Очищает кэш, возвращает количество удаленных ссылок"""
        count = len(self._items)
        self._items.clear()
        return count
