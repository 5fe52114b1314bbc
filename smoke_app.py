#!/usr/bin/env python3
"""
Smoke test against a running Lead Score Genius server.

Usage: python smoke_app.py [base_url]
"""

import sys
import time
import uuid

import requests

SAMPLE_LEADS = [
    {
        "id": "smoke-1",
        "company": "Alpine Roofing LLC",
        "industry": "Roofing",
        "website": "https://example.com",
        "location": "Denver, CO",
    },
    {
        "id": "smoke-2",
        "company": "Harbor Dental Group",
        "industry": "Dental",
        "location": "Portland, OR",
    },
]


def check_health(base_url):
    """Check the health endpoint."""
    try:
        response = requests.get(f"{base_url}/health", timeout=10)
        if response.status_code == 200:
            print(f"✅ Health check passed: {response.json()}")
            return True
        print(f"❌ Health check failed: {response.status_code}")
        return False
    except requests.exceptions.RequestException as e:
        print(f"❌ Health check error: {e}")
        return False


def check_job_lifecycle(base_url, timeout=120):
    """Enqueue a job and poll it until it reaches a terminal state."""
    try:
        response = requests.post(f"{base_url}/jobs", json={"leads": SAMPLE_LEADS}, timeout=30)
        if response.status_code != 200:
            print(f"❌ Enqueue failed: {response.status_code} {response.text}")
            return False

        job_id = response.json()["job"]["id"]
        print(f"⏳ Job {job_id} queued, polling...")
        deadline = time.time() + timeout
        while time.time() < deadline:
            job = requests.get(f"{base_url}/jobs/{job_id}", timeout=10).json()["job"]
            print(f"   {job['status']} {job['processed']}/{job['total']}")
            if job["status"] == "completed":
                scores = [r["score"]["final_score"] for r in job["results"]]
                print(f"✅ Job completed with scores {scores}")
                return True
            if job["status"] == "failed":
                print(f"❌ Job failed: {job['error']}")
                return False
            time.sleep(2)

        print("❌ Job did not finish in time")
        return False
    except requests.exceptions.RequestException as e:
        print(f"❌ Job lifecycle error: {e}")
        return False


def check_idempotent_enqueue(base_url):
    """Send the same enqueue twice with one Idempotency-Key."""
    headers = {"Idempotency-Key": f"smoke-{uuid.uuid4()}"}
    try:
        first = requests.post(f"{base_url}/jobs", json={"leads": SAMPLE_LEADS[:1]}, headers=headers, timeout=30)
        second = requests.post(f"{base_url}/jobs", json={"leads": SAMPLE_LEADS[:1]}, headers=headers, timeout=30)
        if first.status_code != 200 or second.status_code != 200:
            print(f"❌ Enqueue failed: {first.status_code}/{second.status_code}")
            return False
        if first.json()["job"]["id"] == second.json()["job"]["id"]:
            print("✅ Idempotent enqueue returned the same job")
            return True
        print("❌ Idempotency key created two jobs")
        return False
    except requests.exceptions.RequestException as e:
        print(f"❌ Idempotency check error: {e}")
        return False


def check_empty_batch_rejected(base_url):
    try:
        response = requests.post(f"{base_url}/jobs", json={"leads": []}, timeout=10)
        if response.status_code == 400:
            print("✅ Empty batch rejected")
            return True
        print(f"❌ Empty batch returned {response.status_code}")
        return False
    except requests.exceptions.RequestException as e:
        print(f"❌ Empty batch check error: {e}")
        return False


def main():
    """Run all smoke checks."""
    base_url = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8000"
    print("🚀 Smoke testing Lead Score Genius")
    print("=" * 50)

    checks = [
        ("Health Check", lambda: check_health(base_url)),
        ("Empty Batch", lambda: check_empty_batch_rejected(base_url)),
        ("Idempotent Enqueue", lambda: check_idempotent_enqueue(base_url)),
        ("Job Lifecycle", lambda: check_job_lifecycle(base_url)),
    ]

    passed = 0
    for name, check in checks:
        print(f"\n🧪 Running {name}...")
        if check():
            passed += 1
        else:
            print(f"❌ {name} failed")

    print("\n" + "=" * 50)
    print(f"📊 Results: {passed}/{len(checks)} checks passed")
    return 0 if passed == len(checks) else 1


if __name__ == "__main__":
    sys.exit(main())
