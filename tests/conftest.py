"""Shared test fixtures for the invoice intake test suite."""

from pathlib import Path

import numpy as np
import pytest
from helpers import TODAY, ReviewEnv

from invoice_intake.extraction.fields import FieldCatalog
from invoice_intake.resolution.calibration import Calibrator
from invoice_intake.resolution.resolver import FieldResolver
from invoice_intake.review.queue import ReviewQueue
from invoice_intake.store.artifacts import ArtifactStore
from invoice_intake.validation.rules_engine import RulesEngine
from invoice_intake.vendors import VendorStore


@pytest.fixture
def store() -> ArtifactStore:
    """In-memory artifact store with inline backend calls."""
    return ArtifactStore(persist_timeout=None)


@pytest.fixture
def review_env(tmp_path: Path, store: ArtifactStore) -> ReviewEnv:
    """Resolver, default rules and queue with a fixed date."""
    catalog = FieldCatalog()
    resolver = FieldResolver(catalog, Calibrator(), store, today=lambda: TODAY)
    rules = RulesEngine(None, "balanced", today=lambda: TODAY)
    vendors = VendorStore(tmp_path / "vendors")
    queue = ReviewQueue(rules, resolver, store, catalog, vendors=vendors)
    return ReviewEnv(store, catalog, resolver, rules, vendors, queue)


@pytest.fixture
def blank_page() -> np.ndarray:
    """White grayscale page."""
    return np.full((400, 300), 255, dtype=np.uint8)


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def config_dir(project_root: Path) -> Path:
    """Return the configs directory path."""
    return project_root / "configs"
