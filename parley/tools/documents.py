"""Sample document tools over an in-memory index."""

from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field

from parley.tools.base import ExecutionContext, ToolDefinition
from parley.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class Document:
    """A stored document visible to the assistant."""

    id: str
    name: str
    type: str
    content: str = ""
    tags: list[str] = field(default_factory=list)

    def summary(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "type": self.type, "tags": list(self.tags)}


class DocumentIndex:
    """In-memory document collection keyed by id."""

    def __init__(self, documents: list[Document] | None = None):
        self._documents: dict[str, Document] = {doc.id: doc for doc in documents or []}

    def add(self, document: Document) -> None:
        self._documents[document.id] = document

    def get(self, document_id: str) -> Document | None:
        return self._documents.get(document_id)

    def find(self, document_type: str | None = None) -> list[Document]:
        documents = sorted(self._documents.values(), key=lambda doc: doc.name.lower())
        if document_type:
            documents = [doc for doc in documents if doc.type.lower() == document_type.lower()]
        return documents

    def types(self) -> list[str]:
        return sorted({doc.type for doc in self._documents.values()})


class ListDocumentsInput(BaseModel):
    """Input schema for list_documents."""

    type: str | None = Field(default=None, description="Only list documents of this type, e.g. Actor or JournalEntry")


class ReadDocumentInput(BaseModel):
    """Input schema for read_document."""

    document_id: str = Field(description="Id returned by list_documents")


def create_list_documents_tool(index: DocumentIndex) -> ToolDefinition:
    async def list_documents_handler(params: ListDocumentsInput, context: ExecutionContext) -> dict[str, Any]:
        documents = index.find(params.type)
        logger.debug(f"list_documents({params.type}) -> {len(documents)} documents")
        label = f"{params.type} documents" if params.type else "documents"
        return {
            "documents": [doc.summary() for doc in documents],
            "count": len(documents),
            "display": f"Found {len(documents)} {label}",
        }

    return ToolDefinition(
        name="list_documents",
        description="List available documents, optionally filtered by document type.",
        handler=list_documents_handler,
        input_schema_class=ListDocumentsInput,
    )


def create_read_document_tool(index: DocumentIndex) -> ToolDefinition:
    async def read_document_handler(params: ReadDocumentInput, context: ExecutionContext) -> dict[str, Any]:
        document = index.get(params.document_id)
        if document is None:
            return {"error": f"Document '{params.document_id}' not found"}
        return {**document.summary(), "content": document.content, "display": f"Read {document.name}"}

    return ToolDefinition(
        name="read_document",
        description="Read the full content of a document by id.",
        handler=read_document_handler,
        input_schema_class=ReadDocumentInput,
    )


def load_sample_index() -> DocumentIndex:
    """A small index used when the service runs without a document backend."""
    return DocumentIndex(
        [
            Document(id="doc_001", name="Aria Stormwind", type="Actor", content="A half-elf ranger.", tags=["npc"]),
            Document(id="doc_002", name="Goblin Warband", type="Actor", content="Six goblins and a boss."),
            Document(id="doc_003", name="Session Notes", type="JournalEntry", content="The party reached Hollowmere."),
            Document(id="doc_004", name="Hollowmere", type="Scene", content="A flooded village at dusk."),
        ]
    )
