import logging
from abc import ABC, abstractmethod

from core.config import Settings

logger = logging.getLogger(__name__)


class App(ABC):
    """Something ``main.py`` can launch: the API server or a one-shot task."""

    name: str = "app"
    settings: Settings

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def start(self) -> None:
        storage = "postgres" if self.settings.database_url else "memory"
        logger.info(f"Starting {self.name} ({storage} storage)")
        self.run()

    @abstractmethod
    def run(self) -> None:
        raise NotImplementedError
