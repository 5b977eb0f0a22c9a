import logging
from dataclasses import dataclass
from typing import List

logger = logging.getLogger(__name__)


@dataclass
class Toast:
    title: str
    description: str
    variant: str = 'default'  # 'default' | 'destructive'


class Notifier:
    """Collects user-facing toasts and mirrors them to the log."""

    def __init__(self):
        self.toasts: List[Toast] = []

    def notify(self, title: str, description: str, variant: str = 'default') -> Toast:
        toast = Toast(title=title, description=description, variant=variant)
        self.toasts.append(toast)
        if variant == 'destructive':
            logger.warning(f"{title}: {description}")
        else:
            logger.info(f"{title}: {description}")
        return toast

    def error(self, title: str, description: str) -> Toast:
        return self.notify(title, description, variant='destructive')

    @property
    def last(self):
        return self.toasts[-1] if self.toasts else None
