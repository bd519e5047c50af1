"""Typed response records for the catalog GraphQL and REST surfaces.

One model per known query shape.  Unknown fields are ignored and optional
fields are explicit, so callers never reach into raw JSON.
"""

from __future__ import annotations

from datetime import datetime
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from mediasync.models import FileRecord, FileStatus, ImageInfo, ProvenanceRecord

T = TypeVar("T")


class _Camel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class GraphQLError(_Camel):
    message: str
    path: Optional[list[str | int]] = None
    extensions: dict = Field(default_factory=dict)

    @property
    def code(self) -> str | None:
        return self.extensions.get("code")


class UserError(_Camel):
    """A field-level rejection inside a successful payload."""

    field: Optional[list[str]] = None
    message: str
    code: Optional[str] = None

    @property
    def item_index(self) -> int | None:
        """Index of the input item this error refers to, if the path has one.

        ``["files", "2", "originalSource"]`` -> ``2``.
        """
        for part in self.field or []:
            if part.isdigit():
                return int(part)
        return None

    def describe(self) -> str:
        where = ".".join(self.field or [])
        return f"{where}: {self.message}" if where else self.message


class GraphQLResponse(_Camel, Generic[T]):
    data: Optional[T] = None
    errors: list[GraphQLError] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


class ImagePayload(_Camel):
    width: Optional[int] = None
    height: Optional[int] = None
    url: Optional[str] = None
    original_src: Optional[str] = None
    transformed_src: Optional[str] = None
    src: Optional[str] = None


class PreviewPayload(_Camel):
    image: Optional[ImagePayload] = None


class FilePayload(_Camel):
    id: str
    file_status: FileStatus = FileStatus.UPLOADED
    alt: Optional[str] = None
    created_at: Optional[datetime] = None
    image: Optional[ImagePayload] = None
    preview: Optional[PreviewPayload] = None

    def to_record(self) -> FileRecord:
        preview_url = None
        if self.preview and self.preview.image:
            preview_url = self.preview.image.url
        image = None
        if self.image is not None or preview_url is not None:
            img = self.image or ImagePayload()
            image = ImageInfo(
                width=img.width,
                height=img.height,
                url=img.url,
                original_src=img.original_src,
                transformed_src=img.transformed_src,
                src=img.src,
                preview_url=preview_url,
            )
        return FileRecord(
            id=self.id,
            status=self.file_status,
            descriptive_text=self.alt,
            created_at=self.created_at,
            image=image,
        )


class FileCreatePayload(_Camel):
    files: list[FilePayload] = Field(default_factory=list)
    user_errors: list[UserError] = Field(default_factory=list)


class FileCreateData(_Camel):
    file_create: Optional[FileCreatePayload] = None


class NodeData(_Camel):
    node: Optional[FilePayload] = None


# ---------------------------------------------------------------------------
# Staged uploads
# ---------------------------------------------------------------------------


class StagedParameter(_Camel):
    name: str
    value: str


class StagedTargetPayload(_Camel):
    url: str
    resource_url: str
    parameters: list[StagedParameter] = Field(default_factory=list)


class StagedUploadsCreatePayload(_Camel):
    staged_targets: list[StagedTargetPayload] = Field(default_factory=list)
    user_errors: list[UserError] = Field(default_factory=list)


class StagedUploadsCreateData(_Camel):
    staged_uploads_create: Optional[StagedUploadsCreatePayload] = None


# ---------------------------------------------------------------------------
# Metafields
# ---------------------------------------------------------------------------


class MetafieldPayload(_Camel):
    id: Optional[str] = None
    namespace: str
    key: str
    value: str
    type: str = "single_line_text_field"

    def to_record(self) -> ProvenanceRecord:
        return ProvenanceRecord(
            namespace=self.namespace, key=self.key, value=self.value, type=self.type
        )


class MetafieldsSetPayload(_Camel):
    metafields: list[MetafieldPayload] = Field(default_factory=list)
    user_errors: list[UserError] = Field(default_factory=list)


class MetafieldsSetData(_Camel):
    metafields_set: Optional[MetafieldsSetPayload] = None


class MetafieldEdge(_Camel):
    node: MetafieldPayload


class MetafieldConnection(_Camel):
    edges: list[MetafieldEdge] = Field(default_factory=list)


class MetafieldOwner(_Camel):
    id: Optional[str] = None
    metafields: Optional[MetafieldConnection] = None


class MetafieldOwnerData(_Camel):
    node: Optional[MetafieldOwner] = None


class FileIdNode(_Camel):
    id: str


class FileIdEdge(_Camel):
    node: FileIdNode


class FileIdConnection(_Camel):
    edges: list[FileIdEdge] = Field(default_factory=list)


class FilesSearchData(_Camel):
    files: Optional[FileIdConnection] = None


# ---------------------------------------------------------------------------
# REST
# ---------------------------------------------------------------------------


class ProductImagePayload(BaseModel):
    """REST product image (snake_case on the wire)."""

    model_config = ConfigDict(extra="ignore")

    id: int
    product_id: Optional[int] = None
    src: str
    alt: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None


class ProductImageEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    image: ProductImagePayload
