# In lambda/ folder

import importlib
import io
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from PIL import Image

# Add lambda/ directory to Python path
lambda_dir = Path(__file__).parent.parent
sys.path.insert(0, str(lambda_dir))

import cci.oracle as oracle_module  # noqa: E402
from cci.models import (  # noqa: E402
    Caller,
    Claim,
    ClaimDetails,
    ClaimStatus,
    Evidence,
    EvidenceFile,
    EvidenceType,
    IncidentType,
    InfractionRecord,
    InsuranceState,
    InsuranceStatus,
    PaymentMethod,
    PaymentState,
    PaymentStatus,
    Platform,
    PlatformProfile,
    Policyholder,
    Premium,
    Role,
    StateConflictError,
    StatusEntry,
    StorageCleanupError,
    FileStorageError,
)

ENGINE_MODULES = ("cci.policy", "cci.premium", "cci.claims", "cci.deadlines", "cci.analytics")

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


# ============================================================================
# IN-MEMORY COLLABORATORS
# ============================================================================

class FakeStore:
    """
    Stands in for cci.storage with the same version semantics:
    a write at version N succeeds only if the stored copy is at N.
    """

    def __init__(self):
        self.policyholders: dict = {}
        self.premiums: dict = {}
        self.claims: dict = {}
        self.writes = 0

    def _put(self, table: dict, key: str, record):
        current = table.get(key)
        if current is None and record.version != 0:
            raise StateConflictError(f"{key} no longer exists")
        if current is not None and current.version != record.version:
            raise StateConflictError(f"{key} changed since it was read")
        stored = record.model_copy(update={"version": record.version + 1})
        table[key] = stored
        self.writes += 1
        return stored

    # storage API

    def fetch_policyholder(self, user_id):
        return self.policyholders.get(user_id)

    def save_policyholder(self, policyholder):
        return self._put(self.policyholders, policyholder.user_id, policyholder)

    def fetch_premium(self, user_id):
        return self.premiums.get(user_id)

    def save_premium(self, premium):
        return self._put(self.premiums, premium.user_id, premium)

    def remove_premium(self, user_id):
        self.premiums.pop(user_id, None)

    def list_premiums(self):
        return list(self.premiums.values())

    def fetch_claim(self, claim_id):
        return self.claims.get(claim_id)

    def save_claim(self, claim):
        return self._put(self.claims, claim.claim_id, claim)

    def remove_claim(self, claim):
        current = self.claims.get(claim.claim_id)
        if current is None or current.version != claim.version:
            raise StateConflictError(f"Claim {claim.claim_id} changed since it was read")
        del self.claims[claim.claim_id]

    def list_claims(self):
        return list(self.claims.values())

    def list_claims_for_user(self, user_id):
        return sorted(
            (c for c in self.claims.values() if c.user_id == user_id),
            key=lambda c: c.created_at,
            reverse=True,
        )

    # test helpers

    def put(self, record):
        """Seeds a record as if it had been written once."""
        if isinstance(record, Policyholder):
            table, key = self.policyholders, record.user_id
        elif isinstance(record, Claim):
            table, key = self.claims, record.claim_id
        else:
            table, key = self.premiums, record.user_id
        table[key] = record.model_copy(update={"version": max(record.version, 1)})
        return table[key]


STORE_FUNCTIONS = (
    "fetch_policyholder",
    "save_policyholder",
    "fetch_premium",
    "save_premium",
    "remove_premium",
    "list_premiums",
    "fetch_claim",
    "save_claim",
    "remove_claim",
    "list_claims",
    "list_claims_for_user",
)


class Outbox:
    """Records notify() calls."""

    def __init__(self):
        self.sent: list[tuple[str, str, str]] = []

    def notify(self, to_address, subject, body):
        self.sent.append((to_address, subject, body))

    @property
    def subjects(self) -> list[str]:
        return [s for _, s, _ in self.sent]


class FakeBucket:
    """Records evidence uploads and deletes. fail_after=N fails the N+1th upload."""

    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.deleted: list[str] = []
        self.fail_after: int | None = None
        self.uploads = 0

    def upload_evidence(self, upload, user_id):
        if self.fail_after is not None and self.uploads >= self.fail_after:
            raise FileStorageError(f"Failed to upload evidence {upload.filename}: bucket unavailable")
        self.uploads += 1
        url = f"https://bucket.test/claims/{user_id}/{self.uploads}-{upload.filename}"
        self.objects[url] = upload.data
        return url

    def delete_evidence(self, url):
        if url not in self.objects:
            raise StorageCleanupError(f"Failed to delete evidence {url}")
        del self.objects[url]
        self.deleted.append(url)

    def release_staged(self, urls):
        for url in urls:
            try:
                self.delete_evidence(url)
            except StorageCleanupError:
                pass


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture(autouse=True)
def stub_oracle_by_default(monkeypatch):
    """No test reaches the network: the default oracle is always the stub."""
    monkeypatch.setattr(oracle_module, "GEMINI_API_KEY", "")
    oracle_module.clear_oracle_cache()
    yield
    oracle_module.clear_oracle_cache()


@pytest.fixture
def store(monkeypatch):
    fake = FakeStore()
    for module_name in ENGINE_MODULES:
        module = importlib.import_module(module_name)
        for name in STORE_FUNCTIONS:
            if hasattr(module, name):
                monkeypatch.setattr(module, name, getattr(fake, name))
    return fake


@pytest.fixture(autouse=True)
def outbox(monkeypatch):
    box = Outbox()
    for module_name in ENGINE_MODULES:
        module = importlib.import_module(module_name)
        if hasattr(module, "notify"):
            monkeypatch.setattr(module, "notify", box.notify)
    return box


@pytest.fixture(autouse=True)
def bucket(monkeypatch):
    fake = FakeBucket()
    import cci.claims
    monkeypatch.setattr(cci.claims, "upload_evidence", fake.upload_evidence)
    monkeypatch.setattr(cci.claims, "release_staged", fake.release_staged)
    return fake


@pytest.fixture
def creator():
    return Caller(user_id="creator-1", role=Role.CREATOR)


@pytest.fixture
def other_creator():
    return Caller(user_id="creator-2", role=Role.CREATOR)


@pytest.fixture
def admin():
    return Caller(user_id="admin-1", role=Role.ADMIN)


@pytest.fixture
def youtube_platform():
    """50 000 subscribers, one past infraction."""
    return PlatformProfile(
        name=Platform.YOUTUBE,
        handle="@kamau_cooks",
        profile_url="https://youtube.com/@kamau_cooks",
        audience_size=50000,
        content_type="Cooking",
        risk_history=[InfractionRecord(violation_type="Copyright strike", description="Background music")],
    )


def make_policyholder(
    user_id="creator-1",
    status=InsuranceState.NOT_APPLIED,
    platforms=None,
    monthly_earnings=97000.0,
    **overrides,
) -> Policyholder:
    return Policyholder(
        user_id=user_id,
        email=f"{user_id}@example.com",
        full_name="Test Creator",
        monthly_earnings=monthly_earnings,
        payment_method=PaymentMethod(type="MobileMoney", details="+254700000000"),
        platforms=platforms or [],
        insurance_status=InsuranceStatus(status=status),
        created_at=NOW - timedelta(days=60),
        **overrides,
    )


@pytest.fixture
def registered(store):
    return store.put(make_policyholder())


@pytest.fixture
def approved(store, youtube_platform):
    return store.put(make_policyholder(
        status=InsuranceState.APPROVED,
        platforms=[youtube_platform],
    ))


def make_claim(
    claim_id="CLM-001",
    user_id="creator-1",
    statuses=(ClaimStatus.SUBMITTED,),
    created_at=NOW,
    reported_loss=8000.0,
    **overrides,
) -> Claim:
    history = tuple(
        StatusEntry(status=s, timestamp=created_at + timedelta(hours=i), actor_id=user_id if i == 0 else "admin-1")
        for i, s in enumerate(statuses)
    )
    return Claim(
        claim_id=claim_id,
        user_id=user_id,
        details=ClaimDetails(
            platform=Platform.YOUTUBE,
            incident_type=IncidentType.DEMONETIZATION,
            incident_date=created_at - timedelta(days=3),
            description="Channel demonetized after an automated copyright review",
            reported_earnings_loss=reported_loss,
        ),
        evidence=Evidence(files=(
            EvidenceFile(
                url=f"https://bucket.test/claims/{user_id}/{claim_id}-notice.png",
                type=EvidenceType.SCREENSHOT,
                filename="notice.png",
                uploaded_at=created_at,
            ),
        )),
        status_history=history,
        created_at=created_at,
        updated_at=history[-1].timestamp,
        resolution_deadline=created_at + timedelta(hours=72),
        **overrides,
    )


def png_bytes(color="red", size=(64, 64)) -> bytes:
    img = Image.new("RGB", size, color=color)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def screenshot():
    return {"filename": "notice.png", "content_type": "image/png", "data": png_bytes(), "description": "Demonetization notice"}


@pytest.fixture
def claim_details():
    return {
        "platform": "YouTube",
        "incident_type": "Demonetization",
        "incident_date": NOW - timedelta(days=2),
        "description": "Channel demonetized after an automated copyright review",
        "reported_earnings_loss": 8000.0,
    }


def make_premium(user_id="creator-1", status=PaymentState.PENDING, due_date=NOW, final_amount=2270.0) -> Premium:
    return Premium(
        premium_id=f"PRM-{user_id}",
        user_id=user_id,
        final_amount=final_amount,
        payment_status=PaymentStatus(status=status, due_date=due_date),
        created_at=NOW - timedelta(days=30),
        updated_at=NOW - timedelta(days=30),
    )
