#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
State management module for Node Disk Agent.
This module handles record persistence and recovery across agent restarts.
"""
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict

from .store import RecordStore

logger = logging.getLogger("ndm-agent")

STATE_FILE_NAME = "records.json"


class StateManager:
    """Manager for record persistence and recovery."""

    def __init__(self, run_dir: str):
        self.run_dir = run_dir
        self._lock = threading.Lock()

    @property
    def state_file(self) -> Path:
        return Path(self.run_dir) / STATE_FILE_NAME

    def save_records(self, store: RecordStore) -> None:
        """Write a snapshot of every record to the run directory."""
        if not self.run_dir:
            logger.warning("run_dir not configured, skipping record save")
            return
        try:
            snapshot = store.snapshot()
            with self._lock:
                self.state_file.parent.mkdir(parents=True, exist_ok=True)
                tmp_file = self.state_file.with_suffix(".tmp")
                with tmp_file.open("w", encoding="utf-8") as f:
                    json.dump(snapshot, f, indent=2)
                os.replace(tmp_file, self.state_file)
        except Exception as e:
            logger.error("Failed to save records: %s", e)

    def load_records(self) -> Dict[str, Any]:
        """Load the record snapshot from persistent storage."""
        try:
            if not self.state_file.exists():
                return {}
            with self.state_file.open("r", encoding="utf-8") as f:
                data = json.load(f)
            logger.info("Loaded record snapshot from %s", self.state_file)
            return data if isinstance(data, dict) else {}
        except Exception as e:
            logger.error("Failed to load records: %s", e)
            return {}

    def recover(self, store: RecordStore) -> int:
        """Restore persisted records into `store` and keep the snapshot current afterwards."""
        count = store.restore(self.load_records())
        logger.info("Recovered %d records", count)
        store.watch_all(lambda _event, _obj: self.save_records(store))
        return count
