# tests/conftest.py
import pytest

from jamfhooks.core import log, metrics
from jamfhooks.core.contracts import EventTypeTag, FieldSpec, FieldType
from jamfhooks.core.fixtures import FixtureStore
from jamfhooks.core.handlers import HandlerRegistry
from jamfhooks.core.parser import EventParser
from jamfhooks.core.schema import SchemaRegistry


@pytest.fixture(scope="session", autouse=True)
def _bootstrap_logging():
    # reads LOG_LEVEL / LOG_JSON / .env if available
    log.setup()
    yield


@pytest.fixture(autouse=True)
def _fresh_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture(scope="session")
def builtin_schemas() -> SchemaRegistry:
    reg = SchemaRegistry.load_builtin()
    reg.freeze()
    return reg


@pytest.fixture(scope="session")
def builtin_fixtures() -> FixtureStore:
    return FixtureStore.builtin()


@pytest.fixture
def parser(builtin_schemas) -> EventParser:
    return EventParser(builtin_schemas)


@pytest.fixture
def checkin_parser() -> EventParser:
    """Flat ComputerCheckIn schema: udid:string required."""
    reg = SchemaRegistry()
    reg.register(EventTypeTag.ComputerCheckIn, [FieldSpec("udid", FieldType.STRING)])
    return EventParser(reg)


@pytest.fixture
def registry() -> HandlerRegistry:
    return HandlerRegistry()
