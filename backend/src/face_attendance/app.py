"""Composition root wiring the attendance services together.

One AttendanceApp owns the database, the lazily loaded extractor and every
service built on them; components receive their collaborators explicitly.
"""

from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union
import logging

from .config import get_config
from .enrollment import Enroller, EnrollmentValidator
from .attendance import AttendanceRecorder
from .extraction import BaseFeatureExtractor, LazyExtractor
from .matching import MatchEngine
from .storage import Database, EmbeddingStore
from .sync import (
    HttpRemoteStore,
    InMemoryRemoteStore,
    NetworkMonitor,
    RemotePersistence,
    RetryPolicy,
    SyncCoordinator,
    SyncQueue,
)

logger = logging.getLogger(__name__)

ExtractorFactory = Callable[[], BaseFeatureExtractor]


class AttendanceApp:
    """All services of one attendance station.

    Usage:
        app = AttendanceApp.from_config_file(extractor_factory=load_model)
        result = app.enroller.enroll('ABU24001', name='Ada', image='capture.jpg')
        outcome = app.recorder.recognize_and_mark('probe.jpg', event_id='CSC101')
        session = await app.coordinator.request_sync()
        await app.aclose()
    """

    def __init__(
        self,
        config: Dict[str, Dict[str, Any]],
        extractor_factory: Optional[ExtractorFactory] = None,
        remote: Optional[RemotePersistence] = None,
        online: bool = True
    ):
        """Initialize services from a loaded config.

        Args:
            config: Config dict as returned by get_config()
            extractor_factory: Builds the feature extractor on first use
            remote: Remote store (default: HTTP if remote.base_url is set,
                otherwise an in-memory dry-run store)
            online: Initial network state
        """
        self.config = config
        paths = config['paths']
        matching = config['matching']

        db_path = Path(paths['database_path'])
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.db = Database(db_path)

        embedding_dim = int(matching['embedding_dim'])
        self.store = EmbeddingStore(self.db, embedding_dim=embedding_dim)

        self.extractor: Optional[LazyExtractor] = None
        if extractor_factory is not None:
            self.extractor = LazyExtractor(extractor_factory, embedding_dim=embedding_dim)

        self.engine = MatchEngine.from_config(config, extractor=self.extractor)
        self.queue = SyncQueue(self.db, retry_policy=RetryPolicy.from_config(config))

        self.validator = EnrollmentValidator(self.store)
        self.enroller = Enroller(
            self.store,
            self.queue,
            locks_dir=paths['locks_dir'],
            extractor=self.extractor,
            validator=self.validator,
            lock_timeout=float(config['enrollment']['lock_timeout_seconds'])
        )
        self.recorder = AttendanceRecorder(self.queue, self.store, self.engine)

        if remote is None:
            if config['remote'].get('base_url'):
                remote = HttpRemoteStore.from_config(config)
            else:
                logger.warning("No remote.base_url configured; syncing to an in-memory store")
                remote = InMemoryRemoteStore()
        self.remote = remote

        self.monitor = NetworkMonitor(online=online)
        self.coordinator = SyncCoordinator(
            self.queue,
            self.remote,
            monitor=self.monitor,
            delivery_timeout=float(config['sync']['delivery_timeout_seconds'])
        )

        logger.info(f"AttendanceApp ready: db={db_path}, remote={self.remote!r}")

    @classmethod
    def from_config_file(
        cls,
        config_path: Optional[Union[str, Path]] = None,
        **kwargs
    ) -> 'AttendanceApp':
        """Load config (file, defaults, environment) and build the app."""
        return cls(get_config(config_path), **kwargs)

    def status(self) -> Dict[str, Any]:
        """Get store and sync status."""
        return {
            'store': self.store.get_stats(),
            'sync': self.coordinator.status(),
            'extractor_loaded': bool(self.extractor and self.extractor.loaded),
        }

    async def aclose(self):
        """Wait for running drains, then release every resource."""
        await self.coordinator.wait_idle()
        self.coordinator.close()
        await self.remote.close()
        self.db.dispose()

    def __repr__(self) -> str:
        """String representation."""
        return f"AttendanceApp(db={self.db.db_path}, remote={self.remote!r})"
