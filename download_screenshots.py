"""
Download screenshots and the run report of a quote task from the webhook server
"""
import json
import sys
from pathlib import Path

import requests

from config import WEBHOOK_BASE_URL

SCREENSHOTS_LIST_URL = "{base}/screenshots/{task_id}"
SCREENSHOT_DOWNLOAD_URL = "{base}/screenshot/{task_id}/{filename}"
REPORT_URL = "{base}/report/{task_id}"

DEBUG_DIR = Path(__file__).parent / "debug_screenshots"


def download_report(task_id: str, task_dir: Path, base_url: str = WEBHOOK_BASE_URL) -> bool:
    response = requests.get(REPORT_URL.format(base=base_url, task_id=task_id), timeout=30)
    if response.status_code != 200:
        print(f"No report available (status {response.status_code})")
        return False

    report_path = task_dir / f"{task_id}.json"
    with open(report_path, 'w', encoding='utf-8') as f:
        json.dump(response.json(), f, indent=2, ensure_ascii=False)
    print(f"Report saved: {report_path}")
    return True


def download_screenshots(task_id: str, base_url: str = WEBHOOK_BASE_URL, target_dir: Path = DEBUG_DIR) -> int:
    """
    Download all screenshots for a given task

    Returns:
        int: number of screenshots saved
    """
    print(f"\n{'='*60}")
    print(f"Downloading Screenshots for Task: {task_id}")
    print(f"{'='*60}\n")

    task_dir = Path(target_dir) / task_id
    task_dir.mkdir(parents=True, exist_ok=True)
    print(f"Download directory: {task_dir}\n")

    try:
        response = requests.get(SCREENSHOTS_LIST_URL.format(base=base_url, task_id=task_id), timeout=30)
    except requests.exceptions.RequestException as e:
        print(f"ERROR: {e}")
        return 0

    if response.status_code != 200:
        print(f"ERROR: Failed to get screenshot list. Status: {response.status_code}")
        print(f"Response: {response.text}")
        return 0

    data = response.json()
    screenshots = data.get('screenshots', [])
    total = data.get('total', len(screenshots))
    print(f"Found {total} screenshots\n")

    downloaded = 0
    for i, screenshot in enumerate(screenshots, 1):
        filename = screenshot['filename']
        print(f"[{i}/{total}] Downloading: {filename} ({screenshot.get('size_kb', 0)} KB)...", end=" ")

        try:
            download_response = requests.get(
                SCREENSHOT_DOWNLOAD_URL.format(base=base_url, task_id=task_id, filename=filename),
                timeout=30,
                stream=True
            )
        except requests.exceptions.RequestException as e:
            print(f"[ERROR] {e}")
            continue

        if download_response.status_code != 200:
            print(f"[FAILED] Status: {download_response.status_code}")
            continue

        file_path = task_dir / Path(filename).name
        with open(file_path, 'wb') as f:
            for chunk in download_response.iter_content(chunk_size=8192):
                f.write(chunk)
        print(f"[OK] Saved ({file_path.stat().st_size} bytes)")
        downloaded += 1

    try:
        download_report(task_id, task_dir, base_url)
    except requests.exceptions.RequestException as e:
        print(f"Could not download report: {e}")

    print(f"\n{'='*60}")
    print("Download Complete!")
    print(f"  Downloaded: {downloaded}/{total}")
    print(f"  Location: {task_dir}")
    print(f"{'='*60}\n")

    return downloaded


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage: python download_screenshots.py <task_id> [base_url]")
        sys.exit(1)

    base = sys.argv[2].rstrip("/") if len(sys.argv) > 2 else WEBHOOK_BASE_URL
    sys.exit(0 if download_screenshots(sys.argv[1], base) else 1)
