"""Scheduled device health sweep: stale heartbeats and low batteries."""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from croniter import croniter

from alert_pipeline import AlertPipeline
from document_store import DocumentStore
from metrics import metrics
from models import DEVICES, Device, DeviceStatus, to_iso, utcnow

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """Summary of one sweep."""
    started_at: str
    devices_scanned: int = 0
    marked_offline: List[str] = field(default_factory=list)
    alerts_created: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class DeviceHealthSweeper:
    """Flips stale devices offline and raises device alerts on a cron schedule."""

    def __init__(
        self,
        store: DocumentStore,
        pipeline: AlertPipeline,
        stale_minutes: int = 15,
        cron_schedule: str = "*/15 * * * *",
    ):
        if not croniter.is_valid(cron_schedule):
            raise ValueError(f"Invalid health sweep schedule: {cron_schedule}")
        self.store = store
        self.pipeline = pipeline
        self.stale_after = timedelta(minutes=stale_minutes)
        self.cron_schedule = cron_schedule
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._sweep_lock = threading.Lock()

    def is_stale(self, device: Device, now: datetime) -> bool:
        """A device with no heartbeat at all counts as stale."""
        if device.last_heartbeat is None:
            return True
        return now - device.last_heartbeat > self.stale_after

    def run_once(self, now: Optional[datetime] = None) -> SweepResult:
        """
        Run one sweep.

        Presence flips are committed as a single batch before any alert is
        submitted; each candidate then gets its own existence check. Stale
        candidates are re-read before being flipped, so a heartbeat that lands
        after the scan keeps the device online.

        Args:
            now: Reference time, defaults to the current UTC time

        Returns:
            SweepResult with the devices flipped and the alerts created
        """
        now = now or utcnow()
        result = SweepResult(started_at=to_iso(now))

        with self._sweep_lock:
            devices = [Device.from_document(doc.id, doc.data) for doc in self.store.query(DEVICES)]
            result.devices_scanned = len(devices)

            observations = []
            batch = self.store.batch()
            for device in devices:
                previous_status = device.status
                new_status = previous_status
                if previous_status != DeviceStatus.OFFLINE and self.is_stale(device, now):
                    # A heartbeat may have landed since the scan
                    current = self._reread(device.device_id)
                    if current is None:
                        continue
                    if current.status == DeviceStatus.OFFLINE or not self.is_stale(current, now):
                        logger.info(f"Device {device.device_id} reported in during the sweep, leaving it alone")
                        observations.append((current, current.status, current.status))
                        continue
                    device = current
                    new_status = DeviceStatus.OFFLINE
                    batch.update(DEVICES, device.device_id, {
                        "status": DeviceStatus.OFFLINE.value,
                        "offlineSince": to_iso(now),
                    })
                    result.marked_offline.append(device.device_id)
                observations.append((device, previous_status, new_status))

            if len(batch):
                batch.commit()
                logger.info(f"Marked {len(result.marked_offline)} device(s) offline: {', '.join(result.marked_offline)}")

            for device, previous_status, new_status in observations:
                try:
                    submissions = self.pipeline.process_device(device, previous_status, new_status)
                except Exception as e:
                    logger.error(f"Health check failed for device {device.device_id}: {e}", exc_info=True)
                    result.errors.append(device.device_id)
                    continue
                for submission in submissions:
                    if submission.created:
                        result.alerts_created.append(submission.alert_id)
                    elif submission.error:
                        result.errors.append(device.device_id)

        metrics.record_sweep(len(result.marked_offline))
        logger.info(
            f"Health sweep done: scanned={result.devices_scanned}, "
            f"offline={len(result.marked_offline)}, alerts={len(result.alerts_created)}"
        )
        return result

    def _reread(self, device_id: str) -> Optional[Device]:
        data = self.store.get(DEVICES, device_id)
        return Device.from_document(device_id, data) if data is not None else None

    def next_run_after(self, moment: datetime) -> datetime:
        return croniter(self.cron_schedule, moment).get_next(datetime)

    def start(self):
        """Start the sweep worker."""
        if self._running:
            logger.warning("Health sweeper is already running")
            return

        self._running = True
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._worker_loop, daemon=True)
        self._thread.start()
        logger.info(f"Health sweeper started (schedule: {self.cron_schedule})")

    def stop(self):
        """Stop the sweep worker."""
        if not self._running:
            return

        self._running = False
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
        logger.info("Health sweeper stopped")

    def _worker_loop(self):
        """Sleep until the next cron tick, then sweep."""
        while self._running:
            next_run = self.next_run_after(utcnow())
            wait_seconds = max((next_run - utcnow()).total_seconds(), 0)
            if self._stop_event.wait(wait_seconds):
                break
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Error in health sweeper worker loop: {e}", exc_info=True)
