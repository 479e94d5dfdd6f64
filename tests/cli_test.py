from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from vexgraph.__main__ import app
from vexgraph.core.config import reset_config
from vexgraph.core.container import Container

runner = CliRunner()


@pytest.fixture(autouse=True)
def sqlite_backend(tmp_path, monkeypatch):
    monkeypatch.setenv('VEXGRAPH_BACKEND', 'sql')
    monkeypatch.setenv('VEXGRAPH_DATABASE_URL', f"sqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setenv('VEXGRAPH_MAX_WORKERS', '2')
    reset_config()
    Container.reset()
    with patch('vexgraph.__main__.setup_logging'):
        yield
    Container.reset()
    reset_config()


def test_version():
    result = runner.invoke(app, ['--version'])
    assert result.exit_code == 0
    assert 'vexgraph' in result.output


def test_db_init_and_status():
    assert runner.invoke(app, ['db', 'init']).exit_code == 0
    result = runner.invoke(app, ['db', 'status'])
    assert result.exit_code == 0
    assert 'Packages' in result.output


def test_ingest_then_resolve_purl(write_json, csaf_data):
    path = write_json('advisory.json', csaf_data)

    ingested = runner.invoke(app, ['ingest', 'csaf', str(path)])
    assert ingested.exit_code == 0

    result = runner.invoke(app, ['resolve', '--purl', 'pkg:maven/org.example/lib@1.2.3', '--json'])
    assert result.exit_code == 0
    assert '"status": "affected"' in result.output
    assert '"vulnerability": "CVE-2024-0001"' in result.output


def test_ingest_directory(write_json, cve_data, tmp_path):
    write_json('cve.json', cve_data)
    result = runner.invoke(app, ['ingest', 'cve', str(tmp_path)])
    assert result.exit_code == 0


def test_ingest_invalid_file_fails(write_json):
    path = write_json('broken.json', {'vulnerabilities': []})
    result = runner.invoke(app, ['ingest', 'csaf', str(path)])
    assert result.exit_code == 1


def test_resolve_sbom_file(write_json, csaf_data, spdx_data):
    advisory = write_json('advisory.json', csaf_data)
    sbom = write_json('sbom.json', spdx_data)
    runner.invoke(app, ['ingest', 'csaf', str(advisory)])

    result = runner.invoke(app, ['resolve', '--sbom', str(sbom), '--json'])

    assert result.exit_code == 0
    assert 'pkg:maven/org.example/lib@1.2.3' in result.output


def test_resolve_ingested_document(write_json, csaf_data, spdx_data):
    runner.invoke(app, ['ingest', 'csaf', str(write_json('advisory.json', csaf_data))])
    runner.invoke(app, ['ingest', 'spdx', str(write_json('sbom.json', spdx_data))])

    result = runner.invoke(app, ['resolve', '--document', 'https://example.com/spdx/app-1.0.0', '--json'])

    assert result.exit_code == 0
    assert '"status": "affected"' in result.output


def test_resolve_requires_input():
    assert runner.invoke(app, ['resolve']).exit_code == 1


def test_resolve_unknown_document():
    runner.invoke(app, ['db', 'init'])
    result = runner.invoke(app, ['resolve', '--document', 'missing'])
    assert result.exit_code == 1


def test_resolve_malformed_purl():
    runner.invoke(app, ['db', 'init'])
    result = runner.invoke(app, ['resolve', '--purl', 'pkg:npm/foo%zz'])
    assert result.exit_code == 1
