"""
POS Ledger Load Testing with Locust

Run with:
    locust -f tests/stress/locustfile.py --host http://127.0.0.1:5001

Or headless:
    locust -f tests/stress/locustfile.py --host http://127.0.0.1:5001 \
           --users 10 --spawn-rate 2 --run-time 60s --headless

Every writer hits the same branch drawer, so the run doubles as a contention
test for the cash ledger. When the run stops the cash chain of that drawer is
walked end to end.

Pass thresholds:
- p95 response time < 500ms for reads
- p95 response time < 1000ms for writes
- Error rate < 1%
- Cash chain intact after the run
"""

import os
import time
import random
import uuid
from decimal import Decimal
from typing import Dict, List

import httpx
from locust import HttpUser, task, between, events


# =============================================================================
# CONFIGURATION
# =============================================================================

BUSINESS_ID = int(os.environ.get("TEST_BUSINESS_ID", "1"))
BRANCH_ID = int(os.environ.get("TEST_BRANCH_ID", "1"))
VENDOR_ID = int(os.environ.get("TEST_VENDOR_ID", "1"))

WRITE_NAMES = ("cash/adjust", "sales/post", "sales/replay", "returns/post")


# =============================================================================
# METRICS TRACKING
# =============================================================================

class MetricsCollector:
    """Collect and report metrics."""

    def __init__(self):
        self.request_counts: Dict[str, int] = {}
        self.error_counts: Dict[str, int] = {}
        self.response_times: Dict[str, List[float]] = {}
        self.contention_counts: Dict[str, int] = {}

    def record(self, name: str, response_time: float, success: bool, contended: bool = False):
        if name not in self.request_counts:
            self.request_counts[name] = 0
            self.error_counts[name] = 0
            self.contention_counts[name] = 0
            self.response_times[name] = []

        self.request_counts[name] += 1
        if not success:
            self.error_counts[name] += 1
        if contended:
            self.contention_counts[name] += 1
        self.response_times[name].append(response_time)

    def get_summary(self) -> Dict:
        summary = {}
        for name in self.request_counts:
            times = sorted(self.response_times[name])
            count = len(times)
            if count == 0:
                continue

            p50_idx = int(count * 0.50)
            p95_idx = int(count * 0.95)
            p99_idx = int(count * 0.99)

            summary[name] = {
                "count": self.request_counts[name],
                "errors": self.error_counts[name],
                "contended": self.contention_counts[name],
                "error_rate": self.error_counts[name] / self.request_counts[name] * 100,
                "avg_ms": sum(times) / count,
                "p50_ms": times[p50_idx] if p50_idx < count else times[-1],
                "p95_ms": times[p95_idx] if p95_idx < count else times[-1],
                "p99_ms": times[p99_idx] if p99_idx < count else times[-1],
            }
        return summary


metrics = MetricsCollector()


def new_key(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:16]}"


def sale_line() -> Dict:
    if random.random() < 0.5:
        return {
            "product_id": "V-DATES",
            "product_name": "Dates 1kg",
            "unit_price": "8.800",
            "original_unit_price": "8.000",
            "quantity": random.randint(1, 3),
            "vendor_id": VENDOR_ID,
        }
    return {
        "product_id": "P-TEA",
        "product_name": "Karak Tea",
        "unit_price": f"{random.randint(100, 5000) / 1000:.3f}",
        "quantity": random.randint(1, 4),
    }


# =============================================================================
# USER BEHAVIORS
# =============================================================================

class LedgerUser(HttpUser):
    """
    Base till bound to the seeded business and branch.
    """
    wait_time = between(0.2, 1)
    abstract = True

    def post_json(self, path: str, body: Dict, name: str, key: str = None):
        headers = {"Content-Type": "application/json"}
        if key:
            headers["Idempotency-Key"] = key

        start = time.time()
        response = self.client.post(path, json=body, headers=headers, name=name)
        elapsed = (time.time() - start) * 1000

        # 409: contention outlasted the retry limit, nothing was written
        contended = response.status_code == 409
        metrics.record(name, elapsed, response.status_code == 201 or contended, contended)
        return response


class CashierUser(LedgerUser):
    """
    Rings up sales, retries some with the same key, and returns a few.
    """
    weight = 3

    def on_start(self):
        self.recent: List[Dict] = []

    @task(6)
    def post_sale(self):
        key = new_key("sale")
        body = {
            "business_id": BUSINESS_ID,
            "branch_id": BRANCH_ID,
            "payment_method": random.choice(["cash", "cash", "card"]),
            "cashier_name": "Load Test",
            "items": [sale_line() for _ in range(random.randint(1, 3))],
        }
        response = self.post_json("/api/transactions/sales", body, "sales/post", key)
        if response.status_code == 201:
            self.recent.append({"key": key, "body": body, "posting": response.json()["posting"]})
            self.recent = self.recent[-10:]

    @task(2)
    def replay_sale(self):
        """Resend a finished checkout; nothing new may be written."""
        if not self.recent:
            return
        sale = random.choice(self.recent)
        self.post_json("/api/transactions/sales", sale["body"], "sales/replay", sale["key"])

    @task(1)
    def post_return(self):
        if not self.recent:
            return
        sale = self.recent.pop(0)
        document = sale["posting"]["document"]
        sold = document["sold_products"][0]
        self.post_json("/api/transactions/returns", {
            "business_id": BUSINESS_ID,
            "branch_id": BRANCH_ID,
            "original_receipt_id": document["receipt_id"],
            "items": [{"sold_product_id": sold["sold_product_id"], "quantity": 1}],
            "return_reason": "Load test return",
        }, "returns/post", new_key("return"))


class DrawerUser(LedgerUser):
    """
    Supervisor moving cash in and out of the drawer.
    """
    weight = 2

    @task
    def adjust(self):
        kind = random.choice(["deposit", "deposit", "withdrawal"])
        self.post_json("/api/cash/adjustments", {
            "business_id": BUSINESS_ID,
            "branch_id": BRANCH_ID,
            "type": kind,
            "amount": f"{random.randint(1, 2000) / 1000:.3f}",
            "reason": f"Load test {kind}",
        }, "cash/adjust", new_key("adjust"))


class ReportingUser(LedgerUser):
    """
    Back office reading balances and reports while tills write.
    """
    weight = 2

    def get(self, path: str, name: str, params: Dict = None):
        start = time.time()
        response = self.client.get(path, params=params, name=name)
        metrics.record(name, (time.time() - start) * 1000, response.status_code == 200)

    @task(5)
    def balance(self):
        self.get("/api/cash/balance", "cash/balance", {"business_id": BUSINESS_ID, "branch_id": BRANCH_ID})

    @task(2)
    def cash_stats(self):
        self.get("/api/cash/stats", "cash/stats", {"business_id": BUSINESS_ID, "branch_id": BRANCH_ID})

    @task(2)
    def vendor_summary(self):
        self.get("/api/vendor-transactions/summary", "vendors/summary",
                 {"business_id": BUSINESS_ID, "branch_id": BRANCH_ID})

    @task(1)
    def health_check(self):
        self.get("/health", "system/health")


# =============================================================================
# CHAIN CHECK
# =============================================================================

def check_cash_chain(host: str) -> List[str]:
    """
    Page through the drawer's entries and confirm every link.
    """
    response = httpx.get(
        f"{host}/api/cash/entries",
        params={"business_id": BUSINESS_ID, "branch_id": BRANCH_ID, "limit": 500},
        timeout=30,
    )
    response.raise_for_status()
    entries = sorted(response.json()["entries"], key=lambda e: e["sequence"])

    breaks = []
    previous_total = None
    for entry in entries:
        prev = Decimal(entry["previous_total_cash"])
        moved = Decimal(entry["cash_additions"]) - Decimal(entry["cash_removals"])
        new = Decimal(entry["new_total_cash"])
        if previous_total is not None and prev != previous_total:
            breaks.append(f"seq {entry['sequence']}: previous {prev} != head {previous_total}")
        if prev + moved != new:
            breaks.append(f"seq {entry['sequence']}: {prev} + {moved} != {new}")
        previous_total = new

    balance = httpx.get(
        f"{host}/api/cash/balance",
        params={"business_id": BUSINESS_ID, "branch_id": BRANCH_ID},
        timeout=30,
    ).json()["balance"]
    if entries and len(entries) < 500 and Decimal(balance) != previous_total:
        breaks.append(f"resolved balance {balance} != chain head {previous_total}")
    return breaks


# =============================================================================
# EVENT HANDLERS
# =============================================================================

@events.test_stop.add_listener
def on_test_stop(environment, **kwargs):
    """Print summary when test stops."""
    print("\n" + "=" * 80)
    print("LOAD TEST SUMMARY")
    print("=" * 80)

    summary = metrics.get_summary()

    print(f"\n{'Endpoint':<24} {'Count':>8} {'Errors':>8} {'409s':>6} {'Err%':>8} {'Avg(ms)':>10} {'P95(ms)':>10}")
    print("-" * 80)

    total_requests = 0
    total_errors = 0
    all_pass = True

    for name, stats in sorted(summary.items()):
        total_requests += stats["count"]
        total_errors += stats["errors"]

        # Check thresholds
        p95_threshold = 1000 if name in WRITE_NAMES else 500
        passed = stats["p95_ms"] < p95_threshold and stats["error_rate"] < 1

        status = "PASS" if passed else "FAIL"
        if not passed:
            all_pass = False

        print(f"{name:<24} {stats['count']:>8} {stats['errors']:>8} {stats['contended']:>6} "
              f"{stats['error_rate']:>7.2f}% {stats['avg_ms']:>9.1f} {stats['p95_ms']:>9.1f} [{status}]")

    print("-" * 80)
    print(f"{'TOTAL':<24} {total_requests:>8} {total_errors:>8} {'':>6} {total_errors/max(total_requests,1)*100:>7.2f}%")
    print("=" * 80)

    if environment.host:
        try:
            breaks = check_cash_chain(environment.host)
        except httpx.HTTPError as e:
            breaks = [f"chain check could not run: {e}"]
        if breaks:
            all_pass = False
            print(f"\n[FAIL] Cash chain broken in {len(breaks)} place(s)")
            for line in breaks[:10]:
                print(f"  - {line}")
        else:
            print("\n[PASS] Cash chain intact")

    if all_pass:
        print("\n[PASS] All endpoints within thresholds")
    else:
        print("\n[FAIL] Some checks failed")
        print("  - Reads: P95 < 500ms, Error rate < 1%")
        print("  - Writes: P95 < 1000ms, Error rate < 1%")
        environment.process_exit_code = 1

    print("=" * 80)


# =============================================================================
# SIMPLE STRESS TEST (for pytest integration)
# =============================================================================

def run_quick_stress_test(host: str, users: int = 5, duration: int = 30) -> Dict:
    """
    Run a quick stress test and return results.

    For integration with pytest:

    from tests.stress.locustfile import run_quick_stress_test
    results = run_quick_stress_test("http://localhost:5001", users=5, duration=30)
    assert results["error_rate"] < 1
    """
    import subprocess
    import json

    result = subprocess.run([
        "locust",
        "-f", __file__,
        "--host", host,
        "--users", str(users),
        "--spawn-rate", "2",
        "--run-time", f"{duration}s",
        "--headless",
        "--json"
    ], capture_output=True, text=True)

    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError:
        return {"error": result.stderr, "stdout": result.stdout}
