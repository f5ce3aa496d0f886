class SaveQueueError(Exception):
    """Базовая ошибка очереди сохранения."""


class PermanentSaveError(SaveQueueError):
    """Бэкенд отклонил товар окончательно - повторять автоматически нет смысла."""
