"""Tests for the text scanner."""

import pytest

from ioc_resolver.detection.patterns import get_default_registry
from ioc_resolver.detection.scanner import Scanner, resolve_overlaps
from ioc_resolver.models import CachedEntity, HashKind, ObservableType, RawCandidate


def _candidate(type_, start, end, priority, name="test"):
    """Create a RawCandidate spanning [start, end)."""
    return RawCandidate(type_, "x" * (end - start), start, end, priority, name)


def _entity(entity_id, name, entity_type="Malware", platform_id="p1", **kwargs):
    """Create a CachedEntity."""
    return CachedEntity(id=entity_id, name=name, type=entity_type, platform_id=platform_id, **kwargs)


@pytest.fixture
def scanner():
    """Scanner over the default registry."""
    return Scanner()


class TestResolveOverlaps:
    """Tests for the overlap sweep."""

    def test_url_swallows_domain(self):
        """Test that a contained lower-priority candidate is dropped."""
        url = _candidate(ObservableType.URL, 0, 30, 100)
        domain = _candidate(ObservableType.DOMAIN, 8, 20, 90)
        assert resolve_overlaps([domain, url]) == [url]

    def test_same_start_highest_priority_wins(self):
        """Test that ties on start are broken by priority."""
        url = _candidate(ObservableType.URL, 0, 20, 100)
        domain = _candidate(ObservableType.DOMAIN, 0, 10, 90)
        assert resolve_overlaps([domain, url]) == [url]

    def test_later_higher_priority_replaces(self):
        """Test that a later overlapping candidate with higher priority replaces the accepted one."""
        file_name = _candidate(ObservableType.FILE, 0, 10, 70)
        domain = _candidate(ObservableType.DOMAIN, 2, 12, 90)
        assert resolve_overlaps([file_name, domain]) == [domain]

    def test_equal_priority_keeps_first(self):
        """Test that an overlapping candidate of equal priority is dropped."""
        first = _candidate(ObservableType.FILE, 0, 10, 77, "md5")
        second = _candidate(ObservableType.FILE, 5, 15, 77, "md5")
        assert resolve_overlaps([second, first]) == [first]

    def test_disjoint_and_adjacent_kept(self):
        """Test that non-overlapping candidates all survive, ordered by start."""
        a = _candidate(ObservableType.IPV4, 20, 30, 84)
        b = _candidate(ObservableType.DOMAIN, 0, 10, 90)
        c = _candidate(ObservableType.MAC, 10, 20, 65)
        assert resolve_overlaps([a, b, c]) == [b, c, a]

    def test_empty(self):
        """Test that no candidates give no output."""
        assert resolve_overlaps([]) == []


class TestDetectObservables:
    """Tests for observable detection."""

    def test_end_to_end_defanged_text(self, scanner, e2e_text):
        """Test the defanged email, URL and hash example."""
        observables = scanner.detect_observables(e2e_text)

        assert [o.type for o in observables] == [
            ObservableType.EMAIL,
            ObservableType.URL,
            ObservableType.FILE,
        ]
        email, url, md5 = observables
        assert email.refanged_value == "user@evil.example.com"
        assert email.is_defanged is True
        assert url.refanged_value == "https://evil.example.com/payload"
        assert url.value == "hxxps://evil[.]example[.]com/payload"
        assert md5.value == "d41d8cd98f00b204e9800998ecf8427e"
        assert md5.hash_kind == HashKind.MD5
        assert md5.is_defanged is False

    def test_offsets_point_into_original_text(self, scanner, e2e_text):
        """Test that offsets slice the raw (defanged) match out of the input."""
        for observable in scanner.detect_observables(e2e_text):
            assert e2e_text[observable.start_index:observable.end_index] == observable.value

    def test_url_swallows_domain(self, scanner):
        """Test that the domain inside a URL is not reported separately."""
        observables = scanner.detect_observables("Visit https://evil.example.com/login now")
        assert len(observables) == 1
        assert observables[0].type == ObservableType.URL
        assert observables[0].value == "https://evil.example.com/login"

    def test_email_swallows_domain(self, scanner):
        """Test that the domain of an email address is not reported separately."""
        observables = scanner.detect_observables("mail admin@corp-mail.com today")
        assert len(observables) == 1
        assert observables[0].type == ObservableType.EMAIL

    def test_defanged_ipv4(self, scanner):
        """Test a defanged IPv4 address."""
        observables = scanner.detect_observables("beacon to 45[.]77[.]12[.]9 on 443")
        assert len(observables) == 1
        assert observables[0].type == ObservableType.IPV4
        assert observables[0].refanged_value == "45.77.12.9"
        assert observables[0].is_defanged is True

    def test_reserved_ipv4_rejected(self, scanner):
        """Test that 0.0.0.0 is dropped by its validator."""
        observables = scanner.detect_observables("bind 0.0.0.0 then call 8.8.8.8")
        assert [o.value for o in observables] == ["8.8.8.8"]

    @pytest.mark.parametrize(
        "value,hash_kind",
        [
            ("d41d8cd98f00b204e9800998ecf8427e", HashKind.MD5),
            ("da39a3ee5e6b4b0d3255bfef95601890afd80709", HashKind.SHA1),
            ("e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855", HashKind.SHA256),
            (
                "cf83e1357eefb8bdf1542850d66d8007d620e4050b5715dc83f4a921d36ce9ce"
                "47d0d13c5d85f2b0ff8318d2877eec2f63b931bd47417a81a538327af927da3e",
                HashKind.SHA512,
            ),
        ],
    )
    def test_hash_kind_follows_length(self, scanner, value, hash_kind):
        """Test that each hash length is reported once, under its own kind."""
        observables = scanner.detect_observables(f"hash: {value} seen")
        assert len(observables) == 1
        assert observables[0].type == ObservableType.FILE
        assert observables[0].hash_kind == hash_kind
        assert observables[0].value == value

    def test_payment_card_requires_luhn(self, scanner):
        """Test that only the Luhn-valid card number is detected."""
        observables = scanner.detect_observables("cards 4111111111111111 and 4111111111111112")
        assert [(o.type, o.value) for o in observables] == [
            (ObservableType.PAYMENT_CARD, "4111111111111111")
        ]

    def test_user_agent(self, scanner):
        """Test that a browser user agent is one observable, not an IP inside it."""
        user_agent = (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
        )
        observables = scanner.detect_observables(f"UA: {user_agent} seen")
        assert len(observables) == 1
        assert observables[0].type == ObservableType.USER_AGENT
        assert observables[0].value == user_agent

    @pytest.mark.parametrize(
        "hex_digest,hash_kind",
        [
            ("da39a3ee5e6b4b0d3255bfef95601890afd80709", HashKind.SHA1),
            ("e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855", HashKind.SHA256),
        ],
    )
    def test_certificate_fingerprint(self, scanner, hex_digest, hash_kind):
        """Test that a colon-separated fingerprint is a certificate, not MAC addresses."""
        fingerprint = ":".join(hex_digest[i:i + 2] for i in range(0, len(hex_digest), 2)).upper()
        observables = scanner.detect_observables(f"Fingerprint={fingerprint}")
        assert len(observables) == 1
        assert observables[0].type == ObservableType.X509_CERTIFICATE
        assert observables[0].hash_kind == hash_kind
        assert observables[0].value == fingerprint

    def test_paren_scheme_separator(self, scanner):
        """Test a URL defanged with a parenthesized scheme separator."""
        observables = scanner.detect_observables("get hxxp(:/)/evil[.]example[.]com/x now")
        assert len(observables) == 1
        assert observables[0].type == ObservableType.URL
        assert observables[0].refanged_value == "http://evil.example.com/x"
        assert observables[0].is_defanged is True

    def test_duplicates_reported_per_occurrence(self, scanner):
        """Test that every occurrence of the same value is kept with its own offsets."""
        observables = scanner.detect_observables("8.8.8.8 and again 8.8.8.8")
        assert len(observables) == 2
        assert observables[0].lookup_key == observables[1].lookup_key
        assert observables[0].start_index != observables[1].start_index

    def test_context_window(self):
        """Test that context is the surrounding text clipped to the window."""
        text = "prefix text here 8.8.8.8 suffix text here"
        observable = Scanner(context_window=5).detect_observables(text)[0]
        start, end = observable.start_index, observable.end_index
        assert observable.context == text[start - 5:end + 5]

    def test_disabled_types(self, e2e_text):
        """Test that a registry without file patterns finds no hashes."""
        registry = get_default_registry().without([ObservableType.FILE])
        observables = Scanner(registry).detect_observables(e2e_text)
        assert [o.type for o in observables] == [ObservableType.EMAIL, ObservableType.URL]

    def test_empty_text(self, scanner):
        """Test that empty text gives no observables."""
        assert scanner.detect_observables("") == []


class TestDetectIdentifiers:
    """Tests for CVE and technique id detection."""

    def test_cve(self, scanner):
        """Test CVE detection."""
        cves = scanner.detect_cves("Patch CVE-2021-44228 now")
        assert len(cves) == 1
        assert cves[0].type == "Vulnerability"
        assert cves[0].name == "CVE-2021-44228"

    def test_cve_unicode_dash(self, scanner):
        """Test that the name is normalized while the matched value stays raw."""
        text = "Patch cve\u20112021\u201144228 now"
        cve = scanner.detect_cves(text)[0]
        assert cve.name == "CVE-2021-44228"
        assert cve.matched_value == text[cve.start_index:cve.end_index]

    def test_attack_patterns(self, scanner):
        """Test technique and sub-technique detection."""
        techniques = scanner.detect_attack_patterns("uses T1059.001 and T1566")
        assert [t.name for t in techniques] == ["T1059.001", "T1566"]
        assert all(t.type == "Attack-Pattern" for t in techniques)


class TestDetectEntities:
    """Tests for cached entity name matching."""

    def test_name_match_is_resolved(self, scanner):
        """Test that a matched name carries a platform match per entity."""
        name_map = {
            "emotet": [_entity("malware--1", "Emotet"), _entity("malware--9", "Emotet", platform_id="p2")]
        }
        detections = scanner.detect_entities("Dropped by Emotet yesterday", name_map)

        assert len(detections) == 1
        detection = detections[0]
        assert detection.name == "Emotet"
        assert detection.found is True
        assert {(m.platform_id, m.entity_id) for m in detection.platform_matches} == {
            ("p1", "malware--1"),
            ("p2", "malware--9"),
        }

    def test_name_inside_defanged_domain_is_ignored(self, scanner):
        """Test that 'Software' does not match inside dl[.]software-update.org."""
        name_map = {"software": [_entity("malware--3", "Software")]}
        assert scanner.detect_entities("Download from dl[.]software-update.org today", name_map) == []
        assert len(scanner.detect_entities("The Software package", name_map)) == 1

    def test_longest_name_first(self, scanner):
        """Test that a longer name wins over its prefix."""
        name_map = {
            "apt29": [_entity("is--1", "APT29", "Intrusion-Set")],
            "apt29 group": [_entity("is--2", "APT29 Group", "Intrusion-Set")],
        }
        detections = scanner.detect_entities("The APT29 Group struck", name_map)
        assert [d.name for d in detections] == ["APT29 Group"]

    def test_entity_reported_once(self, scanner):
        """Test that repeated mentions of one entity yield one detection."""
        name_map = {"emotet": [_entity("malware--1", "Emotet")]}
        assert len(scanner.detect_entities("Emotet and again Emotet", name_map)) == 1

    def test_alias_of_seen_entity_skipped(self, scanner):
        """Test that an alias is not reported once the entity was matched by name."""
        emotet = _entity("malware--1", "Emotet", aliases=["Heodo"])
        name_map = {"emotet": [emotet], "heodo": [emotet]}
        detections = scanner.detect_entities("Emotet, also known as Heodo", name_map)
        assert len(detections) == 1

    def test_short_names_skipped(self, scanner):
        """Test that names below the minimum length are not matched."""
        name_map = {"abc": [_entity("tool--1", "ABC", "Tool")]}
        assert scanner.detect_entities("the abc tool", name_map) == []

    def test_parent_technique_not_matched_in_subtechnique(self, scanner):
        """Test that T1059 does not claim the prefix of T1059.001."""
        name_map = {
            "t1059": [_entity("ap--1", "Command and Scripting Interpreter", "Attack-Pattern", x_mitre_id="T1059")]
        }
        assert scanner.detect_entities("seen T1059.001 here", name_map) == []
        assert len(scanner.detect_entities("seen T1059 here", name_map)) == 1

    def test_occupied_spans_skipped(self, scanner):
        """Test that spans claimed by other detections are not reused."""
        text = "Dropped by Emotet"
        name_map = {"emotet": [_entity("malware--1", "Emotet")]}
        assert scanner.detect_entities(text, name_map, occupied=[(0, len(text))]) == []


class TestScan:
    """Tests for Scanner.scan."""

    def test_scan_combines_detectors(self, scanner):
        """Test a scan with observables, a CVE, a technique and a cached name."""
        text = "Emotet exploited CVE-2021-44228 via T1190 from 8.8.8.8"
        name_map = {"emotet": [_entity("malware--1", "Emotet")]}

        result = scanner.scan(text, name_map=name_map)

        assert [o.value for o in result.observables] == ["8.8.8.8"]
        assert [c.name for c in result.cves] == ["CVE-2021-44228"]
        assert [t.name for t in result.attack_patterns] == ["T1190"]
        assert [e.name for e in result.entities] == ["Emotet"]
        assert result.total == 4
        assert [d.start_index for d in result.all_detections()] == sorted(
            d.start_index for d in result.all_detections()
        )

    def test_known_names(self, scanner):
        """Test caller-supplied names."""
        result = scanner.scan("APT28 targeted NATO", known_names={"APT28": "Intrusion-Set"})
        assert len(result.entities) == 1
        assert result.entities[0].type == "Intrusion-Set"
        assert result.entities[0].found is False

    def test_empty_text(self, scanner):
        """Test that empty text gives an empty result."""
        result = scanner.scan("")
        assert result.total == 0
        assert result.scan_time_ms == 0.0
