import copy
import json

import pytest

from vexgraph.core.config import SqlConfig
from vexgraph.core.repository import SqlGraphRepository
from vexgraph.models.csaf import CsafDocument
from vexgraph.models.cve import CveRecord
from vexgraph.models.spdx import SpdxDocument

CSAF_VEX = {
    'document': {
        'category': 'csaf_vex',
        'title': 'Example lib advisory',
        'tracking': {'id': 'EX-2024-0001', 'version': '1', 'status': 'final'},
        'publisher': {'name': 'Example', 'category': 'vendor'},
    },
    'product_tree': {
        'branches': [{
            'category': 'vendor',
            'name': 'Example',
            'branches': [{
                'category': 'product_name',
                'name': 'lib',
                'branches': [
                    {
                        'category': 'product_version_range',
                        'name': 'vers:maven/>=1.0.0|<1.3.0',
                        'product': {
                            'product_id': 'LIB-OLD',
                            'name': 'lib >=1.0.0 <1.3.0',
                            'product_identification_helper': {'purl': 'pkg:maven/org.example/lib'},
                        },
                    },
                    {
                        'category': 'product_version',
                        'name': '1.3.0',
                        'product': {
                            'product_id': 'LIB-130',
                            'name': 'lib 1.3.0',
                            'product_identification_helper': {'purl': 'pkg:maven/org.example/lib@1.3.0'},
                        },
                    },
                ],
            }],
        }],
    },
    'vulnerabilities': [{
        'cve': 'CVE-2024-0001',
        'title': 'Deserialization flaw in lib',
        'product_status': {
            'known_affected': ['LIB-OLD'],
            'fixed': ['LIB-130'],
        },
        'scores': [{'products': ['LIB-OLD'], 'cvss_v3': {'baseSeverity': 'HIGH', 'baseScore': 8.1}}],
    }],
}

CVE_RECORD = {
    'dataType': 'CVE_RECORD',
    'dataVersion': '5.1',
    'cveMetadata': {'cveId': 'CVE-2021-44228', 'state': 'PUBLISHED'},
    'containers': {
        'cna': {
            'title': 'Remote code execution in log4j',
            'affected': [{
                'vendor': 'apache',
                'product': 'log4j',
                'versions': [
                    {'version': '2.0', 'lessThan': '2.15.0', 'status': 'affected', 'versionType': 'semver'},
                    {'version': '2.15.0', 'status': 'unaffected'},
                ],
            }],
            'metrics': [{'cvssV3_1': {'baseScore': 10.0, 'baseSeverity': 'CRITICAL'}}],
        },
    },
}

SPDX_SBOM = {
    'SPDXID': 'SPDXRef-DOCUMENT',
    'spdxVersion': 'SPDX-2.3',
    'name': 'app',
    'documentNamespace': 'https://example.com/spdx/app-1.0.0',
    'documentDescribes': ['SPDXRef-app'],
    'packages': [
        {
            'SPDXID': 'SPDXRef-app',
            'name': 'app',
            'versionInfo': '1.0.0',
            'externalRefs': [{
                'referenceCategory': 'PACKAGE-MANAGER',
                'referenceType': 'purl',
                'referenceLocator': 'pkg:npm/app@1.0.0',
            }],
        },
        {
            'SPDXID': 'SPDXRef-lib',
            'name': 'lib',
            'versionInfo': '1.2.3',
            'externalRefs': [{
                'referenceCategory': 'PACKAGE-MANAGER',
                'referenceType': 'purl',
                'referenceLocator': 'pkg:maven/org.example/lib@1.2.3',
            }],
        },
        {
            'SPDXID': 'SPDXRef-blob',
            'name': 'blob',
            'versionInfo': '0.1',
        },
    ],
    'relationships': [
        {'spdxElementId': 'SPDXRef-DOCUMENT', 'relationshipType': 'DESCRIBES', 'relatedSpdxElement': 'SPDXRef-app'},
        {'spdxElementId': 'SPDXRef-app', 'relationshipType': 'DEPENDS_ON', 'relatedSpdxElement': 'SPDXRef-lib'},
        {'spdxElementId': 'SPDXRef-lib', 'relationshipType': 'DEPENDS_ON', 'relatedSpdxElement': 'SPDXRef-missing'},
    ],
}


@pytest.fixture
def csaf_data() -> dict:
    return copy.deepcopy(CSAF_VEX)


@pytest.fixture
def cve_data() -> dict:
    return copy.deepcopy(CVE_RECORD)


@pytest.fixture
def spdx_data() -> dict:
    return copy.deepcopy(SPDX_SBOM)


@pytest.fixture
def csaf_document(csaf_data) -> CsafDocument:
    return CsafDocument.model_validate(csaf_data)


@pytest.fixture
def cve_record(cve_data) -> CveRecord:
    return CveRecord.model_validate(cve_data)


@pytest.fixture
def spdx_document(spdx_data) -> SpdxDocument:
    return SpdxDocument.model_validate(spdx_data)


@pytest.fixture
def repository(tmp_path):
    repo = SqlGraphRepository(SqlConfig(url=f"sqlite:///{tmp_path / 'graph.db'}"))
    repo.ensure_schema()
    yield repo
    repo.close()


@pytest.fixture
def write_json(tmp_path):
    def _write(name: str, data: dict):
        path = tmp_path / name
        path.write_text(json.dumps(data), encoding='utf-8')
        return path
    return _write
