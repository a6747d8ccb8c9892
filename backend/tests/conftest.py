"""
Pytest configuration and shared fixtures.

Every test gets a fresh in-memory SQLite database with the app's get_db
dependency pointed at it, a fresh wizard session store and fresh cached
settings. Stripe, object storage and SMS providers are always mocked.
"""
import base64
import io
import os
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

# Set test database before any imports
os.environ["DATABASE_URL"] = "sqlite://"

from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import enable_sqlite_foreign_keys


def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (may require API keys)"
    )


# One connection shared by every session so the in-memory database survives
test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
enable_sqlite_foreign_keys(test_engine)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


def override_get_db():
    """Override database dependency for testing."""
    db = TestSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="session", autouse=True)
def setup_app_dependency_override():
    """Point the app's get_db dependency at the test database."""
    from database import get_db
    from main import app

    app.dependency_overrides[get_db] = override_get_db
    yield
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def setup_test_database():
    """Create all tables before each test and drop them afterwards."""
    import db_models
    db_models.Base.metadata.create_all(bind=test_engine)
    yield
    db_models.Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(autouse=True)
def reset_process_state():
    """Clear cached settings, the SMS service, wizard sessions and sweep state."""
    from config import get_settings
    from sms_service import get_sms_service
    from wizard import get_session_store
    from reconciliation_scheduler import reset_reported

    get_settings.cache_clear()
    get_sms_service.cache_clear()
    get_session_store.cache_clear()
    reset_reported()
    yield
    get_settings.cache_clear()
    get_sms_service.cache_clear()
    get_session_store.cache_clear()


@pytest.fixture
def db_session():
    """Get a test database session."""
    db = TestSessionLocal()
    try:
        yield db
    finally:
        db.close()


def make_image_bytes(image_format: str = "PNG", size=(64, 40), color=(30, 120, 200)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format=image_format)
    return buffer.getvalue()


@pytest.fixture
def png_bytes():
    """A small valid PNG."""
    return make_image_bytes("PNG")


@pytest.fixture
def jpeg_bytes():
    """A small valid JPEG."""
    return make_image_bytes("JPEG")


@pytest.fixture
def signature_data_url():
    """A drawn signature as the signature pad serializes it."""
    buffer = io.BytesIO()
    img = Image.new("RGBA", (300, 100), (255, 255, 255, 0))
    for x in range(20, 280):
        img.putpixel((x, 50 + (x % 7)), (51, 65, 85, 255))
    img.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode()


class RecordingSMSProvider:
    """SMS provider double that records messages instead of sending them."""

    name = "recording"

    def __init__(self, success: bool = True, error: str = "Out of quota"):
        self.success = success
        self.error = error
        self.messages = []

    def is_configured(self) -> bool:
        return True

    async def send_sms(self, message):
        from sms_service import SMSResponse
        self.messages.append(message)
        if self.success:
            return SMSResponse(success=True, message_id=f"msg_{len(self.messages)}", status="sent", provider=self.name)
        return SMSResponse(success=False, status="failed", error=self.error, provider=self.name)


@pytest.fixture
def sms_provider():
    """A provider that accepts every message."""
    return RecordingSMSProvider()


@pytest.fixture
def failing_sms_provider():
    """A provider that rejects every message."""
    return RecordingSMSProvider(success=False)


@pytest.fixture
def sms(sms_provider):
    """SMS service over the recording provider."""
    from sms_service import SMSService
    return SMSService(sms_provider, shop_name="San Diego Electric Bike")


@pytest.fixture
def failing_sms(failing_sms_provider):
    from sms_service import SMSService
    return SMSService(failing_sms_provider, shop_name="San Diego Electric Bike")
