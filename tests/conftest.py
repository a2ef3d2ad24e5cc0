# POS Ledger Live-Server Test Suite - Shared Configuration and Fixtures
#
# This module provides:
# - Test database provisioning (ephemeral SQLite per test run)
# - Multi-business fixtures (businesses, branches, vendors, pricing settings)
# - HTTP client with idempotency-key helpers
# - Failure message formatting

import os
import sys
import time
import tempfile
import subprocess
import shutil
import uuid
from pathlib import Path
from decimal import Decimal
from typing import Generator, Optional, Dict, Any
from dataclasses import dataclass

import pytest
import httpx

# Add backend to path for imports
REPO_ROOT = Path(__file__).parent.parent
BACKEND_DIR = REPO_ROOT / "backend"
sys.path.insert(0, str(BACKEND_DIR))


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class TestConfig:
    """Test configuration with environment variable overrides."""
    backend_base_url: str = os.environ.get("TEST_BACKEND_URL", "http://127.0.0.1:5001")

    # Timeouts
    request_timeout: float = float(os.environ.get("TEST_REQUEST_TIMEOUT", "30"))
    server_startup_timeout: float = float(os.environ.get("TEST_SERVER_STARTUP_TIMEOUT", "30"))

    # Concurrency (for stress tests)
    stress_users: int = int(os.environ.get("TEST_STRESS_USERS", "10"))
    stress_duration: int = int(os.environ.get("TEST_STRESS_DURATION", "60"))

    # Random seed for determinism
    seed: int = int(os.environ.get("TEST_SEED", str(int(time.time()))))


@dataclass
class SeedData:
    """IDs of the reference rows the suite posts against."""
    business_id: int = int(os.environ.get("TEST_BUSINESS_ID", "1"))
    branch_id: int = int(os.environ.get("TEST_BRANCH_ID", "1"))
    second_branch_id: int = int(os.environ.get("TEST_SECOND_BRANCH_ID", "2"))
    vendor_id: int = int(os.environ.get("TEST_VENDOR_ID", "1"))
    other_business_id: int = int(os.environ.get("TEST_OTHER_BUSINESS_ID", "2"))
    other_branch_id: int = int(os.environ.get("TEST_OTHER_BRANCH_ID", "3"))


# =============================================================================
# FAILURE MESSAGE HELPER
# =============================================================================

class TestFailure(Exception):
    """
    Custom exception with detailed, human-readable failure messages.

    Structure:
    1. Scenario: What was being tested
    2. Expected: What should have happened
    3. Actual: What actually happened
    4. Likely Cause: Most probable reason for failure
    5. Code Location: Where to look in the codebase
    """

    def __init__(
        self,
        scenario: str,
        expected: str,
        actual: str,
        likely_cause: str,
        code_location: str,
        response: Optional[httpx.Response] = None,
        extra_context: Optional[Dict[str, Any]] = None
    ):
        self.scenario = scenario
        self.expected = expected
        self.actual = actual
        self.likely_cause = likely_cause
        self.code_location = code_location
        self.response = response
        self.extra_context = extra_context or {}

        message = self._format_message()
        super().__init__(message)

    def _format_message(self) -> str:
        lines = [
            "",
            "=" * 80,
            "TEST FAILURE DETAILS",
            "=" * 80,
            f"SCENARIO: {self.scenario}",
            "-" * 80,
            f"EXPECTED: {self.expected}",
            f"ACTUAL: {self.actual}",
            "-" * 80,
            f"LIKELY CAUSE: {self.likely_cause}",
            f"CODE LOCATION: {self.code_location}",
        ]

        if self.response is not None:
            lines.extend([
                "-" * 80,
                f"HTTP STATUS: {self.response.status_code}",
                f"RESPONSE BODY: {self.response.text[:1000]}",
            ])

        if self.extra_context:
            lines.append("-" * 80)
            lines.append("EXTRA CONTEXT:")
            for key, value in self.extra_context.items():
                lines.append(f"  {key}: {value}")

        lines.append("=" * 80)
        return "\n".join(lines)


def assert_response(
    response: httpx.Response,
    expected_status: int,
    scenario: str,
    code_location: str,
    expected_body_contains: Optional[str] = None
):
    """
    Assert HTTP response status and optionally body content.
    Raises TestFailure with detailed message on failure.
    """
    if response.status_code != expected_status:
        raise TestFailure(
            scenario=scenario,
            expected=f"HTTP {expected_status}",
            actual=f"HTTP {response.status_code}",
            likely_cause=_infer_cause(response),
            code_location=code_location,
            response=response
        )

    if expected_body_contains and expected_body_contains not in response.text:
        raise TestFailure(
            scenario=scenario,
            expected=f"Response body contains: {expected_body_contains}",
            actual=f"Response body: {response.text[:500]}",
            likely_cause="Response format changed or wrong endpoint hit",
            code_location=code_location,
            response=response
        )


def _infer_cause(response: httpx.Response) -> str:
    """Infer likely cause from response status/body."""
    if response.status_code == 404:
        return "Resource not found - wrong ID or route not registered"
    elif response.status_code == 400:
        return "Invalid request - missing required field, float money value, or validation failed"
    elif response.status_code == 409:
        return "Conflict - idempotency key reused for a different request, or ledger contention outlasted retries"
    elif response.status_code == 207:
        return "Partial posting - cash moved but a later stream failed; check the event's failure_reason"
    elif response.status_code == 502:
        return "Partial posting before any cash moved - check backend logs"
    elif response.status_code == 503:
        return "Ledger head could not be resolved - database locked or unreachable"
    elif response.status_code == 500:
        return "Server error - check backend logs for stack trace"
    else:
        return f"Unexpected status code {response.status_code}"


# =============================================================================
# HTTP CLIENT
# =============================================================================

class APIClient:
    """
    HTTP client wrapper with scope defaults and idempotency helpers.
    """

    def __init__(self, base_url: str, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.Client(timeout=timeout)

    def _headers(self, idempotency_key: Optional[str] = None) -> Dict:
        headers = {"Content-Type": "application/json"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def get(self, path: str, params: Optional[Dict] = None, **kwargs) -> httpx.Response:
        return self.client.get(
            f"{self.base_url}{path}",
            headers=self._headers(),
            params=params,
            **kwargs
        )

    def post(
        self,
        path: str,
        json: Optional[Dict] = None,
        idempotency_key: Optional[str] = None,
        **kwargs
    ) -> httpx.Response:
        return self.client.post(
            f"{self.base_url}{path}",
            headers=self._headers(idempotency_key),
            json=json,
            **kwargs
        )

    def cash_balance(self, business_id: int, branch_id: int) -> Decimal:
        response = self.get("/api/cash/balance", params={"business_id": business_id, "branch_id": branch_id})
        assert_response(
            response, 200,
            scenario="Read cash balance",
            code_location="backend/posledger/routes/cash.py:balance_route"
        )
        return Decimal(response.json()["balance"])

    def close(self):
        """Close the HTTP client."""
        self.client.close()


def new_key(prefix: str = "live") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:16]}"


def chain_breaks(entries) -> list:
    """
    Walk cash entries oldest-first and report every link that does not hold.

    Each entry must continue from the previous entry's total, and its own
    total must equal previous + additions - removals.
    """
    breaks = []
    ordered = sorted(entries, key=lambda e: e["sequence"])
    previous_total = None
    for entry in ordered:
        prev = Decimal(entry["previous_total_cash"])
        new = Decimal(entry["new_total_cash"])
        moved = Decimal(entry["cash_additions"]) - Decimal(entry["cash_removals"])
        if previous_total is not None and prev != previous_total:
            breaks.append(f"seq {entry['sequence']}: previous {prev} != head {previous_total}")
        if prev + moved != new:
            breaks.append(f"seq {entry['sequence']}: {prev} + {moved} != {new}")
        previous_total = new
    return breaks


# =============================================================================
# SERVER MANAGEMENT
# =============================================================================

class ServerManager:
    """
    Manages Flask backend server lifecycle for tests.
    """

    def __init__(self, config: TestConfig):
        self.config = config
        self.process: Optional[subprocess.Popen] = None
        self.db_file: Optional[Path] = None

    def start(self) -> bool:
        """Start the Flask server with test database."""
        temp_dir = tempfile.mkdtemp(prefix="posledger_test_")
        self.db_file = Path(temp_dir) / "test_posledger.sqlite3"

        env = os.environ.copy()
        env["DATABASE_URL"] = f"sqlite:///{self.db_file}"
        env["TESTING"] = "true"

        self.process = subprocess.Popen(
            [sys.executable, "-m", "flask", "--app", "wsgi", "run", "--port", "5001"],
            cwd=str(BACKEND_DIR),
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )

        return self._wait_for_server()

    def _wait_for_server(self) -> bool:
        """Wait for server to be responsive."""
        start_time = time.time()
        while time.time() - start_time < self.config.server_startup_timeout:
            try:
                response = httpx.get(f"{self.config.backend_base_url}/health", timeout=2.0)
                if response.status_code in (200, 503):  # 503 until the schema exists
                    return True
            except (httpx.ConnectError, httpx.TimeoutException):
                pass
            time.sleep(0.5)
        return False

    def stop(self):
        """Stop the Flask server and cleanup."""
        if self.process:
            self.process.terminate()
            try:
                self.process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self.process.kill()
            self.process = None

        if self.db_file and self.db_file.parent.exists():
            shutil.rmtree(self.db_file.parent, ignore_errors=True)

    def initialize_db(self) -> SeedData:
        """
        Create the schema and seed two businesses through the app factory.
        """
        from posledger import create_app
        from posledger.extensions import db
        from posledger.models import Branch, Business, Vendor
        from posledger.services import settings_service

        app = create_app({"SQLALCHEMY_DATABASE_URI": f"sqlite:///{self.db_file}"})

        with app.app_context():
            db.create_all()

            alpha = Business(code="ALPHA", name="Alpha Souq", is_active=True)
            beta = Business(code="BETA", name="Beta Trading", is_active=True)
            db.session.add_all([alpha, beta])
            db.session.commit()

            muscat = Branch(business_id=alpha.id, name="Muscat", code="MCT")
            sohar = Branch(business_id=alpha.id, name="Sohar", code="SOH")
            nizwa = Branch(business_id=beta.id, name="Nizwa", code="NZW")
            vendor = Vendor(code="V001", name="Dates Co", is_active=True)
            db.session.add_all([muscat, sohar, nizwa, vendor])
            db.session.commit()

            settings_service.update_business_settings(
                alpha.id,
                tax_enabled=True,
                tax_rate="5",
                vendor_commission_enabled=True,
                default_commission_rate="10",
                minimum_commission_amount="5.000",
            )

            seed = SeedData(
                business_id=alpha.id,
                branch_id=muscat.id,
                second_branch_id=sohar.id,
                vendor_id=vendor.id,
                other_business_id=beta.id,
                other_branch_id=nizwa.id,
            )
            db.session.remove()
            db.engine.dispose()

        return seed


# =============================================================================
# TEST DATA FACTORY
# =============================================================================

class TestDataFactory:
    """
    Posts documents through the public API and returns their payloads.
    """

    def __init__(self, client: APIClient, seed: SeedData):
        self.client = client
        self.seed = seed

    def owner_line(self, unit_price: str = "10.000", quantity: int = 1) -> Dict:
        return {
            "product_id": "P-TEA",
            "product_name": "Karak Tea",
            "unit_price": unit_price,
            "quantity": quantity,
        }

    def vendor_line(self, unit_price: str = "8.800", original_unit_price: str = "8.000", quantity: int = 1) -> Dict:
        return {
            "product_id": "V-DATES",
            "product_name": "Dates 1kg",
            "unit_price": unit_price,
            "original_unit_price": original_unit_price,
            "quantity": quantity,
            "vendor_id": self.seed.vendor_id,
        }

    def sale_body(self, items, payment_method: str = "cash", branch_id: Optional[int] = None, **extra) -> Dict:
        body = {
            "business_id": self.seed.business_id,
            "branch_id": branch_id or self.seed.branch_id,
            "payment_method": payment_method,
            "cashier_name": "Live Suite",
            "items": items,
        }
        body.update(extra)
        return body

    def post_sale(self, items, idempotency_key: Optional[str] = None, **kwargs) -> Dict:
        response = self.client.post(
            "/api/transactions/sales",
            json=self.sale_body(items, **kwargs),
            idempotency_key=idempotency_key,
        )
        assert_response(
            response, 201,
            scenario="Post a sale through the router",
            code_location="backend/posledger/services/posting_service.py:post_sale"
        )
        return response.json()["posting"]

    def deposit(self, amount: str, branch_id: Optional[int] = None, reason: str = "Float top-up") -> Dict:
        response = self.client.post("/api/cash/adjustments", json={
            "business_id": self.seed.business_id,
            "branch_id": branch_id or self.seed.branch_id,
            "type": "deposit",
            "amount": amount,
            "reason": reason,
        }, idempotency_key=new_key("deposit"))
        assert_response(
            response, 201,
            scenario=f"Deposit {amount} into the drawer",
            code_location="backend/posledger/services/posting_service.py:post_cash_adjustment"
        )
        return response.json()["posting"]


# =============================================================================
# PYTEST FIXTURES
# =============================================================================

@pytest.fixture(scope="session")
def test_config() -> TestConfig:
    """Provide test configuration."""
    return TestConfig()


@pytest.fixture(scope="session")
def server_manager(test_config: TestConfig) -> Generator[ServerManager, None, None]:
    """
    Manage test server lifecycle.
    Server is started once per test session.
    """
    manager = ServerManager(test_config)

    # For CI/external server mode, don't manage server
    if os.environ.get("TEST_EXTERNAL_SERVER"):
        yield manager
    else:
        if not manager.start():
            pytest.fail("Failed to start test server")
        yield manager
        manager.stop()


@pytest.fixture(scope="session")
def seed(server_manager: ServerManager) -> SeedData:
    """Reference rows; seeded here unless the server is external."""
    if os.environ.get("TEST_EXTERNAL_SERVER"):
        return SeedData()
    return server_manager.initialize_db()


@pytest.fixture(scope="session")
def api_client(test_config: TestConfig, seed: SeedData) -> Generator[APIClient, None, None]:
    client = APIClient(test_config.backend_base_url, timeout=test_config.request_timeout)
    yield client
    client.close()


@pytest.fixture
def client(api_client: APIClient) -> APIClient:
    return api_client


@pytest.fixture
def factory(api_client: APIClient, seed: SeedData) -> TestDataFactory:
    return TestDataFactory(api_client, seed)


# =============================================================================
# TEST MARKERS
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "smoke: Quick smoke tests for critical paths")
    config.addinivalue_line("markers", "full: Full regression tests")
    config.addinivalue_line("markers", "sales: Sale posting tests")
    config.addinivalue_line("markers", "returns: Return posting tests")
    config.addinivalue_line("markers", "cash: Cash ledger tests")
    config.addinivalue_line("markers", "vendors: Vendor profit tests")
    config.addinivalue_line("markers", "tenant: Multi-business isolation tests")
    config.addinivalue_line("markers", "concurrent: Concurrency tests")
