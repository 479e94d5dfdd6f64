"""Typed view of a CSAF 2.0 document, limited to what normalization reads."""
from datetime import datetime
from typing import Any

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import field_validator


class CsafModel(BaseModel):
    model_config = ConfigDict(extra='ignore', populate_by_name=True)


class ProductIdentificationHelper(CsafModel):
    cpe: str | None = None
    purl: str | None = None


class FullProductName(CsafModel):
    name: str = ''
    product_id: str
    product_identification_helper: ProductIdentificationHelper | None = None


class Branch(CsafModel):
    category: str
    name: str
    product: FullProductName | None = None
    branches: list['Branch'] = Field(default_factory=list)


Branch.model_rebuild()


class Relationship(CsafModel):
    category: str
    product_reference: str
    relates_to_product_reference: str
    full_product_name: FullProductName


class ProductTree(CsafModel):
    branches: list[Branch] = Field(default_factory=list)
    full_product_names: list[FullProductName] = Field(default_factory=list)
    relationships: list[Relationship] = Field(default_factory=list)


class Tracking(CsafModel):
    id: str
    current_release_date: datetime | None = None
    initial_release_date: datetime | None = None
    version: str | None = None
    status: str | None = None


class DocumentMetadata(CsafModel):
    category: str = 'csaf_vex'
    title: str = ''
    lang: str | None = None
    tracking: Tracking
    publisher: dict[str, Any] = Field(default_factory=dict)


class ProductStatus(CsafModel):
    first_affected: list[str] = Field(default_factory=list)
    known_affected: list[str] = Field(default_factory=list)
    last_affected: list[str] = Field(default_factory=list)
    fixed: list[str] = Field(default_factory=list)
    first_fixed: list[str] = Field(default_factory=list)
    known_not_affected: list[str] = Field(default_factory=list)
    under_investigation: list[str] = Field(default_factory=list)
    recommended: list[str] = Field(default_factory=list)


class VulnerabilityIdentifier(CsafModel):
    system_name: str = ''
    text: str


class Flag(CsafModel):
    label: str
    product_ids: list[str] = Field(default_factory=list)


class Score(CsafModel):
    products: list[str] = Field(default_factory=list)
    cvss_v3: dict[str, Any] | None = None
    cvss_v2: dict[str, Any] | None = None


class Cwe(CsafModel):
    id: str
    name: str = ''


class Note(CsafModel):
    category: str
    text: str = ''
    title: str | None = None


class CsafVulnerability(CsafModel):
    cve: str | None = None
    ids: list[VulnerabilityIdentifier] = Field(default_factory=list)
    title: str | None = None
    cwe: Cwe | None = None
    discovery_date: datetime | None = None
    release_date: datetime | None = None
    notes: list[Note] = Field(default_factory=list)
    product_status: ProductStatus = Field(default_factory=ProductStatus)
    flags: list[Flag] = Field(default_factory=list)
    scores: list[Score] = Field(default_factory=list)

    @field_validator('cve', mode='before')
    @classmethod
    def blank_cve(cls, v: Any) -> str | None:
        if isinstance(v, str) and not v.strip():
            return None
        return v


class CsafDocument(CsafModel):
    document: DocumentMetadata
    product_tree: ProductTree = Field(default_factory=ProductTree)
    vulnerabilities: list[CsafVulnerability] = Field(default_factory=list)

    @property
    def document_id(self) -> str:
        return self.document.tracking.id
