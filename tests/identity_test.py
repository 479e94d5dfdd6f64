import pytest

from vexgraph.core.errors import ParseError
from vexgraph.models.identity import ANY
from vexgraph.models.identity import canonicalize
from vexgraph.models.identity import Cpe
from vexgraph.models.identity import NA
from vexgraph.models.identity import parse_identity
from vexgraph.models.identity import Purl
from vexgraph.models.identity import without_version


class TestPurl:
    """Tests for Package URL parsing and canonicalization."""

    @pytest.mark.parametrize('raw', [
        'pkg:npm/%40angular/core@16.2.0',
        'pkg:maven/org.apache.logging.log4j/log4j-core@2.14.1?type=jar',
        'pkg:pypi/django@4.2.1',
        'pkg:golang/github.com/gin-gonic/gin@v1.9.1',
    ])
    def test_canonical_form_is_stable(self, raw):
        """Canonicalizing a canonical string changes nothing."""
        canonical = canonicalize(parse_identity(raw))
        assert canonicalize(parse_identity(canonical)) == canonical

    def test_qualifier_order_does_not_matter(self):
        a = parse_identity('pkg:maven/org.example/lib@1.0?type=jar&classifier=sources')
        b = parse_identity('pkg:maven/org.example/lib@1.0?classifier=sources&type=jar')
        assert a == b
        assert hash(a) == hash(b)
        assert a.identity_id() == b.identity_id()

    def test_type_is_case_insensitive(self):
        assert parse_identity('pkg:NPM/left-pad@1.3.0') == parse_identity('pkg:npm/left-pad@1.3.0')

    def test_without_version(self):
        identity = parse_identity('pkg:npm/left-pad@1.3.0')
        assert without_version(identity).canonical() == 'pkg:npm/left-pad'
        assert identity.version == '1.3.0'

    def test_without_qualifiers(self):
        identity = Purl.parse('pkg:maven/org.example/lib@1.0?type=jar')
        assert identity.without_version().without_qualifiers().canonical() == 'pkg:maven/org.example/lib'

    def test_different_versions_have_different_ids(self):
        a = parse_identity('pkg:npm/left-pad@1.3.0')
        b = parse_identity('pkg:npm/left-pad@1.3.1')
        assert a.identity_id() != b.identity_id()
        assert a.without_version().identity_id() == b.without_version().identity_id()

    @pytest.mark.parametrize('raw', [
        'pkg:npm/foo%2@1.0.0',
        'pkg:npm/foo%zz',
        'npm/foo@1.0.0',
        'pkg:',
        '',
    ])
    def test_malformed_purls_raise(self, raw):
        with pytest.raises(ParseError):
            parse_identity(raw, 'purl')

    def test_unknown_scheme_raises(self):
        with pytest.raises(ParseError):
            parse_identity('swid:example')


class TestCpe:
    """Tests for CPE parsing, binding equivalence and wildcard matching."""

    def test_uri_and_formatted_string_are_equal(self):
        uri = parse_identity('cpe:/a:apache:log4j:2.14.1')
        formatted = parse_identity('cpe:2.3:a:apache:log4j:2.14.1:*:*:*:*:*:*:*')
        assert uri == formatted
        assert uri.canonical() == 'cpe:2.3:a:apache:log4j:2.14.1:*:*:*:*:*:*:*'

    def test_uri_packed_edition(self):
        cpe = Cpe.parse('cpe:/a:vendor:product:1.0::~~pro~linux~x64~')
        assert cpe.sw_edition == 'pro'
        assert cpe.target_sw == 'linux'
        assert cpe.target_hw == 'x64'
        assert cpe.edition == ANY

    def test_components_are_lowercased(self):
        assert Cpe.parse('cpe:2.3:a:Apache:Log4J:*:*:*:*:*:*:*:*').product == 'log4j'

    def test_any_and_na_are_distinct(self):
        na = parse_identity('cpe:2.3:a:vendor:product:-:*:*:*:*:*:*:*')
        any_version = parse_identity('cpe:2.3:a:vendor:product:*:*:*:*:*:*:*:*')
        assert na.version == NA
        assert na != any_version
        assert na.concrete_version is None

    def test_escaped_colon_stays_in_component(self):
        cpe = Cpe.parse(r'cpe:2.3:a:vendor:prod\:uct:1.0:*:*:*:*:*:*:*')
        assert cpe.product == r'prod\:uct'
        assert cpe.version == '1.0'

    def test_stored_any_matches_concrete_query(self):
        stored = Cpe.parse('cpe:2.3:a:apache:*:*:*:*:*:*:*:*:*')
        query = Cpe.parse('cpe:2.3:a:apache:log4j:*:*:*:*:*:*:*:*')
        assert stored.matches(query)
        assert not query.matches(stored)

    def test_different_vendor_does_not_match(self):
        stored = Cpe.parse('cpe:2.3:a:apache:log4j:*:*:*:*:*:*:*:*')
        query = Cpe.parse('cpe:2.3:a:qos:log4j:*:*:*:*:*:*:*:*')
        assert not stored.matches(query)

    def test_without_version(self):
        cpe = Cpe.parse('cpe:2.3:a:apache:log4j:2.14.1:*:*:*:*:*:*:*')
        assert cpe.concrete_version == '2.14.1'
        assert cpe.without_version().version == ANY

    def test_from_vendor_product_escapes_spaces(self):
        cpe = Cpe.from_vendor_product('Example Corp', 'Widget')
        assert cpe.canonical() == r'cpe:2.3:a:example\ corp:widget:*:*:*:*:*:*:*:*'

    @pytest.mark.parametrize('raw', [
        'cpe:2.3:a:apache',
        'cpe:2.3:x:apache:log4j:*:*:*:*:*:*:*:*',
        'cpe:2.3:a::log4j:*:*:*:*:*:*:*:*',
        'cpe:/a:apache:log4j:1:2:3:4:5',
        'cpe:/a:apache:log4j:1.0:%zz',
    ])
    def test_malformed_cpes_raise(self, raw):
        with pytest.raises(ParseError):
            parse_identity(raw)
