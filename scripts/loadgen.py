import argparse
import time
from typing import Dict, List

import requests

DEFAULT_URL = "http://localhost:8000"
TERMINAL = ("finished", "dead", "cancelled")


def submit_signups(base_url: str, n: int, domain: str) -> List[str]:
    ids: List[str] = []
    for i in range(n):
        r = requests.post(
            f"{base_url}/events/user-registered",
            json={"email": f"loadgen+{i}@{domain}", "name": f"Load Test {i}"},
            timeout=10,
        )
        r.raise_for_status()
        ids.append(r.json()["job_id"])
    return ids


def poll(base_url: str, job_ids: List[str], poll_s: float = 0.2, deadline_s: float = 600.0) -> Dict[str, int]:
    done = set()
    counts = {state: 0 for state in TERMINAL}
    t_end = time.time() + deadline_s

    while len(done) < len(job_ids) and time.time() < t_end:
        for job_id in job_ids:
            if job_id in done:
                continue
            r = requests.get(f"{base_url}/jobs/{job_id}", timeout=10)
            if r.status_code != 200:
                continue
            state = r.json()["status"]
            if state in TERMINAL:
                done.add(job_id)
                counts[state] += 1
        time.sleep(poll_s)

    counts["unfinished"] = len(job_ids) - len(done)
    return counts


def main():
    ap = argparse.ArgumentParser(description="Enqueue welcome emails and wait for them to settle")
    ap.add_argument("--url", default=DEFAULT_URL)
    ap.add_argument("--n", type=int, default=100)
    ap.add_argument("--domain", default="example.com")
    args = ap.parse_args()

    t0 = time.time()
    job_ids = submit_signups(args.url, args.n, args.domain)
    counts = poll(args.url, job_ids)
    dt = max(1e-9, time.time() - t0)

    print("=== LOADGEN RESULTS ===")
    print(f"jobs: {args.n}")
    print(f"wall_time_s: {dt:.2f}")
    print(f"throughput_jobs_per_s: {args.n / dt:.2f}")
    print(counts)


if __name__ == "__main__":
    main()
