"""
Run report persistence

Each report is written as one JSON record to the dataset directory and,
when RESULT_WEBHOOK_URL is configured, posted to that callback.
"""
import json
import logging
from pathlib import Path
from typing import Optional

import requests

from config import DATASET_DIR, RESULT_WEBHOOK_URL, RESULT_WEBHOOK_TIMEOUT
from quote_models import RunReport

logger = logging.getLogger(__name__)


class ResultSink:
    """Accepts one RunReport per run"""

    def __init__(self, dataset_dir: Path = DATASET_DIR, webhook_url: Optional[str] = RESULT_WEBHOOK_URL,
                 timeout: int = RESULT_WEBHOOK_TIMEOUT):
        self.dataset_dir = Path(dataset_dir)
        self.dataset_dir.mkdir(parents=True, exist_ok=True)
        self.webhook_url = webhook_url
        self.timeout = timeout

    def report_path(self, run_id: str) -> Path:
        return self.dataset_dir / f"{run_id}.json"

    def push(self, report: RunReport) -> Path:
        record = report.to_dict()

        path = self.report_path(report.run_id)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(record, f, indent=2, ensure_ascii=False, default=str)
        logger.info(f"Run report saved: {path} (status: {record['metadata']['status']})")

        if self.webhook_url:
            self._post(record)

        return path

    def load(self, run_id: str) -> Optional[dict]:
        path = self.report_path(run_id)
        if not path.exists():
            return None
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)

    def _post(self, record: dict) -> bool:
        try:
            response = requests.post(
                self.webhook_url,
                data=json.dumps(record, default=str),
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            logger.info(f"Run report posted to callback ({response.status_code})")
            return True
        except requests.exceptions.RequestException as e:
            logger.error(f"Could not post run report to {self.webhook_url}: {e}")
            return False
