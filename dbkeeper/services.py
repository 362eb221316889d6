"""
Construction of the long-lived dbkeeper components.

The Flask app and the CLI share one set of components per app, stored in
app.extensions['dbkeeper'].
"""

from dataclasses import dataclass
from typing import Callable, Optional

from flask import current_app

from dbkeeper.backup.drivers import create_driver
from dbkeeper.backup.engine import BackupEngine, EngineConfig
from dbkeeper.backup.restore import RestoreEngine
from dbkeeper.backup.storage import StorageBackend, create_storage
from dbkeeper.config import Settings
from dbkeeper.metrics import BackupMetrics
from dbkeeper.notify import WebhookNotifier, create_notifier
from dbkeeper.scheduler import BackupScheduler


EXTENSION_KEY = 'dbkeeper'


@dataclass
class Components:
    settings: Settings
    storage: StorageBackend
    engine: BackupEngine
    restore_engine: RestoreEngine
    scheduler: BackupScheduler
    metrics: BackupMetrics
    notifier: Optional[WebhookNotifier] = None


def build_components(settings: Settings, driver_factory: Callable = create_driver,
                     storage: Optional[StorageBackend] = None) -> Components:
    """
    Wire storage, engine, scheduler, metrics and notifier from settings.

    Args:
        settings: Validated settings
        driver_factory: Database driver factory (replaceable in tests)
        storage: Pre-built storage backend (default: built from settings)
    """
    storage = storage or create_storage(settings.storage)
    metrics = BackupMetrics()
    notifier = create_notifier(settings.monitoring.webhook_url)

    engine = BackupEngine(
        EngineConfig.from_settings(settings),
        storage,
        driver_factory=driver_factory,
        notifier=notifier,
        metrics=metrics
    )
    restore_engine = RestoreEngine(
        settings.database,
        storage,
        driver_factory=driver_factory,
        verify_checksum=settings.backup.verify_checksum,
        temp_dir=settings.backup.temp_dir
    )
    scheduler = BackupScheduler(
        engine,
        settings.schedule,
        metrics=metrics,
        notifier=notifier,
        alert_after_hours=settings.monitoring.alert_after_hours
    )

    return Components(
        settings=settings,
        storage=storage,
        engine=engine,
        restore_engine=restore_engine,
        scheduler=scheduler,
        metrics=metrics,
        notifier=notifier
    )


def get_components(app=None) -> Components:
    """Components of `app` (default: the current Flask app)."""
    app = app or current_app
    return app.extensions[EXTENSION_KEY]
