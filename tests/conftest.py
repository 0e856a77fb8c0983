"""Root conftest.py for test configuration.

Ensures local src/ directory takes priority over any installed packages,
and provides the fixtures shared across test packages.
"""

import hashlib
import sys
import time
from collections.abc import Callable, Generator, Sequence
from dataclasses import dataclass, replace
from pathlib import Path

import numpy as np
import pytest

# Insert local src directory at the beginning of sys.path
# This ensures that the local codescout package is used, not any installed one
_src_dir = Path(__file__).parent.parent / "src"
if str(_src_dir) not in sys.path:
    sys.path.insert(0, str(_src_dir))

# Force reimport of codescout modules if already imported
for module_name in list(sys.modules.keys()):
    if module_name.startswith("codescout"):
        del sys.modules[module_name]

from codescout.cache import CacheLayer, EmbeddingCache, MemoryTier  # noqa: E402
from codescout.core.cancellation import CancellationToken  # noqa: E402
from codescout.core.tokens import ApproxTokenizer  # noqa: E402
from codescout.embedding.base import InputType  # noqa: E402
from codescout.index._internal.chunking import Chunker  # noqa: E402
from codescout.index._internal.db import ChunkStore, Database  # noqa: E402
from codescout.index._internal.discovery import FileIndex, PathFilter  # noqa: E402
from codescout.index._internal.indexing import (  # noqa: E402
    EmbeddingVector,
    LexicalIndex,
    VectorIndex,
    extract_terms,
)
from codescout.index.models import Chunk, FileRecord  # noqa: E402
from codescout.index.pipeline import IndexingPipeline  # noqa: E402

FAKE_MODEL = "fake-model"
FAKE_DIM = 64


class FakeEmbeddingProvider:
    """Deterministic bag-of-words embeddings: one hashed bucket per term."""

    def __init__(self, model_id: str = FAKE_MODEL, dim: int = FAKE_DIM) -> None:
        self._model_id = model_id
        self.dim = dim
        self.calls: list[tuple[list[str], InputType]] = []
        self.fail_with: Exception | None = None

    @property
    def model_id(self) -> str:
        return self._model_id

    def vector_for(self, text: str) -> np.ndarray:
        values = np.zeros(self.dim, dtype=np.float32)
        for term in extract_terms(text):
            bucket = int(hashlib.sha1(term.encode()).hexdigest()[:8], 16) % self.dim
            values[bucket] += 1.0
        return values

    async def embed(
        self,
        texts: Sequence[str],
        input_type: InputType,
        token: CancellationToken | None = None,
    ) -> list[EmbeddingVector]:
        if token is not None:
            token.raise_if_cancelled()
        if self.fail_with is not None:
            raise self.fail_with
        self.calls.append((list(texts), input_type))
        return [EmbeddingVector(self._model_id, self.vector_for(t)) for t in texts]


@dataclass
class IndexEnv:
    """A wired index stack over one workspace directory."""

    root: Path
    db: Database
    file_index: FileIndex
    chunks: ChunkStore
    chunker: Chunker
    lexical: LexicalIndex
    pipeline: IndexingPipeline
    vector: VectorIndex | None = None

    def write(self, rel: str, text: str) -> Path:
        path = self.root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text)
        return path


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Empty workspace root, resolved so stored paths compare equal."""
    root = (tmp_path / "workspace").resolve()
    root.mkdir()
    return root


@pytest.fixture
def db(tmp_path: Path) -> Generator[Database, None, None]:
    """Fresh index database with every table created."""
    database = Database(tmp_path / "index" / "index.db")
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def tokenizer() -> ApproxTokenizer:
    return ApproxTokenizer()


@pytest.fixture
def fake_provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def index_env(workspace: Path, db: Database, tokenizer: ApproxTokenizer) -> IndexEnv:
    """File index, chunk store, lexical index and pipeline without embeddings."""
    file_index = FileIndex(db, PathFilter([workspace], max_file_size=1024 * 1024))
    chunks = ChunkStore(db)
    chunker = Chunker(tokenizer, max_tokens=250)
    lexical = LexicalIndex(db)
    pipeline = IndexingPipeline(
        db=db,
        file_index=file_index,
        chunk_store=chunks,
        chunker=chunker,
        lexical=lexical,
    )
    return IndexEnv(workspace, db, file_index, chunks, chunker, lexical, pipeline)


@pytest.fixture
def embedding_env(index_env: IndexEnv, fake_provider: FakeEmbeddingProvider) -> IndexEnv:
    """index_env rewired with a vector index, embedding cache and memory cache."""
    vector = VectorIndex(index_env.db, fake_provider.model_id)
    layer = CacheLayer([MemoryTier()])
    pipeline = IndexingPipeline(
        db=index_env.db,
        file_index=index_env.file_index,
        chunk_store=index_env.chunks,
        chunker=index_env.chunker,
        lexical=index_env.lexical,
        vector=vector,
        embeddings=EmbeddingCache(fake_provider, layer),
        cache=layer,
    )
    pipeline.embedding_enabled = True
    return replace(index_env, pipeline=pipeline, vector=vector)


@pytest.fixture
def seed_chunks(db: Database) -> Callable[[list[str]], list[Chunk]]:
    """Persist one file per text, each holding a single chunk with that text."""
    store = ChunkStore(db)
    counter = iter(range(1_000_000))

    def _seed(texts: list[str]) -> list[Chunk]:
        stored: list[Chunk] = []
        for text in texts:
            n = next(counter)
            path, content_hash = f"/ws/file{n}.py", f"hash{n}"
            with db.bulk_writer() as writer:
                file_id = writer.insert_returning_id(
                    FileRecord,
                    {
                        "path": path,
                        "content_hash": content_hash,
                        "size": len(text),
                        "language": "python",
                        "last_modified": time.time(),
                        "indexed_at": time.time(),
                    },
                )
            chunk = Chunk(file_id, path, content_hash, 0, text, text, 0, 0, max(1, len(text) // 4))
            stored.extend(store.replace_file_chunks(file_id, [chunk]))
        return stored

    return _seed
