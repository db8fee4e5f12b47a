"""
An orchestration session: one entity store and everything that operates on it.
"""
import logging
from typing import Optional

from ..CONFIG.settings import Settings
from ..DRIVERS.base import EngineDriver
from ..DRIVERS.docker_cli import DockerCliDriver
from ..STORE.entity_store import EntityStore
from ..UTILS.keyed_lock import KeyedLock
from .lifecycle_controller import LifecycleController
from .operations import Operation, OperationDispatcher
from .reconciler import Reconciler

logger = logging.getLogger(__name__)


class OrchestrationSession:
    """
    Wires a store, a driver, the reconciler, the controller and the dispatcher
    together. State lives as long as the session does.
    """

    def __init__(self, settings: Optional[Settings] = None,
                 driver: Optional[EngineDriver] = None):
        """
        Initializes the session.

        :param settings: Settings for every component, defaults when omitted.
        :param driver: Engine driver, a DockerCliDriver when omitted.
        """
        self.settings = settings or Settings()
        self.driver = driver or DockerCliDriver(self.settings)
        self.store = EntityStore()
        self.locks = KeyedLock()
        self.reconciler = Reconciler(self.store, self.driver, self.settings, self.locks)
        self.controller = LifecycleController(self.store, self.driver, self.reconciler,
                                              self.settings, self.locks)
        self.dispatcher = OperationDispatcher(self.controller, max_workers=self.settings.max_workers)
        self._closed = False

    def submit(self, operation: str, *args, **kwargs) -> Operation:
        """
        Runs a controller operation in the background.
        """
        return self.dispatcher.submit(operation, *args, **kwargs)

    def close(self) -> None:
        if not self._closed:
            self.dispatcher.shutdown(wait=True)
            self._closed = True
            logger.debug("Session closed")

    def __enter__(self) -> "OrchestrationSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
