"""
Pytest configuration and shared fixtures
"""
import pytest

from billflow.app.nodes.base_node import StageContext
from billflow.app.workflow.bill_workflow import StageEngine
from billflow.app.workflow.confidence import ConfidenceValidator
from billflow.core.models.database import Database
from billflow.core.models.document_store import DocumentStore
from billflow.core.models.state import ArtifactKind
from billflow.core.utils.helpers import artifact_path, generate_document_id
from billflow.integrations.storage.artifact_store import LocalArtifactStore

from stubs import FakeClock, StubMatcher, StubNormalizer, StubPreprocessor, StubRecognizer, png_bytes


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def database():
    db = Database('sqlite://')
    yield db
    db.dispose()


@pytest.fixture
def store(database, clock):
    return DocumentStore(database, clock=clock)


@pytest.fixture
def artifacts(tmp_path):
    return LocalArtifactStore(
        root=str(tmp_path / 'artifacts'),
        url_base='http://testserver/api/artifacts',
        signing_secret='test-signing-secret',
    )


@pytest.fixture
def make_document(store, artifacts, clock):
    """Create an uploaded document with a PNG original"""
    def _make(owner_id='company-1', data=None, content_type='image/png', advance=1):
        document_id = generate_document_id()
        original_path = artifact_path(owner_id, document_id, ArtifactKind.ORIGINAL)
        artifacts.put(original_path, data if data is not None else png_bytes())
        document = store.create_document(
            owner_id=owner_id,
            document_id=document_id,
            file_name='bill.png',
            content_type=content_type,
            original_path=original_path,
        )
        clock.advance(advance)
        return document
    return _make


@pytest.fixture
def make_engine(store, artifacts):
    """Build a stage engine with stub adapters; keyword arguments replace stubs"""
    def _make(**overrides):
        adapters = dict(
            preprocessor=StubPreprocessor(),
            template_matcher=StubMatcher(),
            recognizer=StubRecognizer(),
            normalizer=StubNormalizer(),
            validator=ConfidenceValidator(threshold=0.85),
        )
        adapters.update(overrides)
        context = StageContext(store=store, artifacts=artifacts, **adapters)
        return StageEngine(context, lease_seconds=300)
    return _make
