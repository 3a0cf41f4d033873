# src/engine/service.py
"""
Engine: builds and owns every service the API needs, wired from config.

Tests construct their own Engine with an in-memory database and fake
executor, vault and pricing collaborators.
"""

import logging
import threading

import config
from engine.archives import ArchiveLinks
from engine.cost import CostAccountant
from engine.db import make_session_factory
from engine.job_manager import JobManager
from engine.lifecycle import ScanLifecycleController
from engine.notifications import WebhookNotifier
from engine.scheduler import ScanScheduler
from engine.store import JobStore
from engine.vault_bridge import SecretVaultBridge
from tools.ansible_adapter import AnsibleAdapter
from tools.pricing import DigitalOceanPricing, PricingService
from tools.vault_adapter import AnsibleVaultAdapter
from utils.crypto import validate_master_key


class Engine:
    def __init__(self, session_factory=None, base_path=None, master_key=None, executor=None,
                 vault=None, pricing_clients=None, notifier=None, job_manager=None,
                 s3_client_factory=None, timeout=None, clock=None):
        self.base_path = base_path or config.ANSIBLE_BASE_PATH
        self.master_key = config.API_ENCRYPTION_KEY if master_key is None else master_key
        self.store = JobStore(session_factory or make_session_factory())
        self.vault_bridge = SecretVaultBridge(self.store, vault or AnsibleVaultAdapter(), self.master_key)
        if timeout is None:
            timeout = config.AUTOMATION_TIMEOUT_SECONDS or None
        self.executor = executor or AnsibleAdapter(
            self.base_path, self.store, show_logs=config.SHOW_ANSIBLE_LOGS, default_timeout=timeout,
        )
        if pricing_clients is None:
            pricing_clients = {"digitalocean": DigitalOceanPricing(config.PRICING_API_URL)}
        self.pricing = PricingService(self.vault_bridge, pricing_clients)
        clock_kwargs = {"clock": clock} if clock else {}
        self.cost = CostAccountant(self.store, self.pricing, **clock_kwargs)
        self.notifier = notifier or WebhookNotifier(config.WEBHOOK_FILE_PATH)
        self.lifecycle = ScanLifecycleController(
            self.store, self.executor, self.vault_bridge, self.cost, self.notifier,
            self.base_path, timeout=timeout, **clock_kwargs,
        )
        self.job_manager = job_manager or JobManager()
        archive_kwargs = {"client_factory": s3_client_factory} if s3_client_factory else {}
        self.archives = ArchiveLinks(self.store, self.vault_bridge, **archive_kwargs)
        self.scheduler = ScanScheduler(self.store, self.lifecycle, self.job_manager, **clock_kwargs)
        self._sweeper = None
        self._sweeper_stop = threading.Event()

    def check(self):
        validate_master_key(self.master_key)

    def start_cost_sweeper(self, interval: float = config.COST_SWEEP_INTERVAL_SECONDS):
        if interval <= 0 or self._sweeper is not None:
            return None
        self._sweeper_stop.clear()
        self._sweeper = threading.Thread(target=self._sweep_loop, args=(interval,), name="cost-sweeper", daemon=True)
        self._sweeper.start()
        logging.info(f"[cost] Sweeper started, every {interval}s")
        return self._sweeper

    def _sweep_loop(self, interval):
        while not self._sweeper_stop.wait(interval):
            try:
                self.cost.finalize_pending()
            except Exception as e:
                logging.error(f"[cost] Sweep failed: {e}")

    def start_scheduler(self, interval: float = config.SCHEDULER_INTERVAL_SECONDS):
        return self.scheduler.start(interval)

    def shutdown(self):
        self.scheduler.stop()
        self._sweeper_stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=5)
            self._sweeper = None
