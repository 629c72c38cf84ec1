"""Text scanner: candidate collection, overlap resolution and entity name matching."""

import logging
import time
from typing import Iterable, Mapping, Optional

from ioc_resolver.detection.defang import is_defanged, refang_indicator
from ioc_resolver.detection.matching import (
    create_matching_regex,
    has_valid_boundaries,
    is_mitre_id,
    is_parent_mitre_id,
    needs_manual_boundary_check,
    ranges_overlap,
)
from ioc_resolver.detection.patterns import (
    CVE_PATTERN,
    MITRE_PATTERN,
    PatternRegistry,
    create_name_pattern,
    get_default_registry,
    normalize_cve,
)
from ioc_resolver.models import (
    CachedEntity,
    DetectedEntity,
    DetectedObservable,
    PlatformMatch,
    RawCandidate,
    ScanResult,
)

logger = logging.getLogger("ioc_resolver.scanner")

DEFAULT_CONTEXT_WINDOW = 50
DEFAULT_MIN_NAME_LENGTH = 4

CVE_ENTITY_TYPE = "Vulnerability"
ATTACK_PATTERN_ENTITY_TYPE = "Attack-Pattern"


def resolve_overlaps(candidates: Iterable[RawCandidate]) -> list[RawCandidate]:
    """
    Pick one candidate per span.

    Candidates are swept left to right (ties broken by priority, highest first).
    A candidate that overlaps the last accepted one replaces it only when its
    priority is strictly higher; otherwise it is dropped.

    Args:
        candidates: Validated candidates from every pattern

    Returns:
        Non-overlapping candidates ordered by start offset
    """
    ordered = sorted(candidates, key=lambda c: (c.start_index, -c.priority))
    accepted: list[RawCandidate] = []
    last_end = 0

    for candidate in ordered:
        if not accepted or candidate.start_index >= last_end:
            accepted.append(candidate)
            last_end = candidate.end_index
        elif candidate.priority > accepted[-1].priority:
            accepted[-1] = candidate
            last_end = candidate.end_index

    return accepted


class Scanner:
    """Finds observables and named entities in free text."""

    def __init__(
        self,
        registry: Optional[PatternRegistry] = None,
        context_window: int = DEFAULT_CONTEXT_WINDOW,
        min_name_length: int = DEFAULT_MIN_NAME_LENGTH,
    ):
        """Initialize the scanner with an injected (or the default) pattern registry."""
        self.registry = registry if registry is not None else get_default_registry()
        self.context_window = context_window
        self.min_name_length = min_name_length

    def _context(self, text: str, start: int, end: int) -> str:
        return text[max(0, start - self.context_window): end + self.context_window]

    def collect_candidates(self, text: str) -> list[RawCandidate]:
        """Run every pattern over ``text`` and keep the hits their validators accept."""
        candidates: list[RawCandidate] = []
        for pattern in self.registry:
            for match in pattern.regex.finditer(text):
                matched = match.group(0)
                if not self.registry.validate(pattern, matched):
                    continue
                candidates.append(
                    RawCandidate(
                        type=pattern.type,
                        matched_text=matched,
                        start_index=match.start(),
                        end_index=match.end(),
                        priority=pattern.priority,
                        pattern_name=pattern.name,
                        hash_kind=pattern.hash_kind,
                    )
                )
        return candidates

    def detect_observables(self, text: str) -> list[DetectedObservable]:
        """Detect observables; offsets refer to ``text`` as given."""
        if not text:
            return []

        observables = []
        for candidate in resolve_overlaps(self.collect_candidates(text)):
            observables.append(
                DetectedObservable(
                    type=candidate.type,
                    value=candidate.matched_text,
                    refanged_value=refang_indicator(candidate.matched_text),
                    is_defanged=is_defanged(candidate.matched_text),
                    hash_kind=candidate.hash_kind,
                    start_index=candidate.start_index,
                    end_index=candidate.end_index,
                    context=self._context(text, candidate.start_index, candidate.end_index),
                )
            )
        return observables

    def detect_cves(self, text: str) -> list[DetectedEntity]:
        cves = []
        for match in CVE_PATTERN.finditer(text):
            cves.append(
                DetectedEntity(
                    type=CVE_ENTITY_TYPE,
                    name=normalize_cve(match.group(0)),
                    matched_value=match.group(0),
                    start_index=match.start(),
                    end_index=match.end(),
                    context=self._context(text, match.start(), match.end()),
                )
            )
        return cves

    def detect_attack_patterns(self, text: str) -> list[DetectedEntity]:
        """Detect MITRE ATT&CK technique ids such as T1059 or T1059.001."""
        techniques = []
        for match in MITRE_PATTERN.finditer(text):
            techniques.append(
                DetectedEntity(
                    type=ATTACK_PATTERN_ENTITY_TYPE,
                    name=match.group(0).upper(),
                    matched_value=match.group(0),
                    start_index=match.start(),
                    end_index=match.end(),
                    context=self._context(text, match.start(), match.end()),
                )
            )
        return techniques

    def detect_entities(
        self,
        text: str,
        name_map: Mapping[str, list[CachedEntity]],
        occupied: Optional[list[tuple[int, int]]] = None,
    ) -> list[DetectedEntity]:
        """
        Find mentions of known (cached) entity names and aliases.

        Longer names are matched first so "APT29 Group" wins over "APT29". Each
        entity is reported once, ranges never overlap each other or ``occupied``,
        and a hit is already resolved: one PlatformMatch per entity carrying the name.

        Args:
            text: Text to scan
            name_map: Lower-cased name or alias -> entities known under it
            occupied: Spans already claimed by other detections

        Returns:
            Resolved entity detections ordered by start offset
        """
        seen_ranges: list[tuple[int, int]] = list(occupied or [])
        seen_ids: set[str] = set()
        detections: list[DetectedEntity] = []

        for name in sorted(name_map, key=len, reverse=True):
            entities = name_map[name]
            if not entities:
                continue
            if len(name) < self.min_name_length and not is_mitre_id(name):
                continue
            if all(entity.id in seen_ids for entity in entities):
                continue

            regex = create_matching_regex(name)
            manual_check = needs_manual_boundary_check(name)
            parent_mitre = is_parent_mitre_id(name)

            for match in regex.finditer(text):
                start, end = match.start(), match.end()
                if manual_check and not has_valid_boundaries(text, start, end):
                    continue
                # T1059 must not claim the prefix of T1059.001
                if parent_mitre and text[end:end + 1] == "." and text[end + 1:end + 2].isdigit():
                    continue
                if ranges_overlap(start, end, seen_ranges):
                    continue

                primary = entities[0]
                detection = DetectedEntity(
                    type=primary.type,
                    name=primary.name,
                    matched_value=match.group(0),
                    aliases=list(primary.aliases),
                    start_index=start,
                    end_index=end,
                    context=self._context(text, start, end),
                )
                for entity in entities:
                    detection.add_match(
                        PlatformMatch(
                            platform_id=entity.platform_id,
                            entity_id=entity.id,
                            entity_type=entity.type,
                            entity_data={"name": entity.name, "aliases": entity.aliases},
                        )
                    )
                    seen_ids.add(entity.id)

                detections.append(detection)
                seen_ranges.append((start, end))
                break

        return sorted(detections, key=lambda d: d.start_index)

    def detect_named_entities(self, text: str, names: Mapping[str, str]) -> list[DetectedEntity]:
        """Find whole-word mentions of caller-supplied names (name -> entity type)."""
        detections = []
        for name, entity_type in names.items():
            if not name.strip():
                continue
            for match in create_name_pattern(name).finditer(text):
                detections.append(
                    DetectedEntity(
                        type=entity_type,
                        name=name,
                        matched_value=match.group(0),
                        start_index=match.start(),
                        end_index=match.end(),
                        context=self._context(text, match.start(), match.end()),
                    )
                )
        return sorted(detections, key=lambda d: d.start_index)

    def scan(
        self,
        text: str,
        name_map: Optional[Mapping[str, list[CachedEntity]]] = None,
        known_names: Optional[Mapping[str, str]] = None,
    ) -> ScanResult:
        """
        Run every detector over ``text``.

        Args:
            text: Page or document text
            name_map: Cached entity names to match (see EntityCache.names_for_matching)
            known_names: Extra names to look for, mapped to their entity type

        Returns:
            ScanResult with observables, CVEs, technique ids and entity mentions
        """
        started = time.perf_counter()
        result = ScanResult()
        if not text:
            return result

        result.observables = self.detect_observables(text)
        result.cves = self.detect_cves(text)
        result.attack_patterns = self.detect_attack_patterns(text)

        occupied = [
            (d.start_index, d.end_index)
            for d in [*result.observables, *result.cves, *result.attack_patterns]
        ]
        if name_map:
            result.entities.extend(self.detect_entities(text, name_map, occupied))
        if known_names:
            result.entities.extend(self.detect_named_entities(text, known_names))

        result.scan_time_ms = (time.perf_counter() - started) * 1000
        logger.debug(
            f"Scanned {len(text)} chars: {len(result.observables)} observables, "
            f"{len(result.cves)} CVEs, {len(result.attack_patterns)} techniques, "
            f"{len(result.entities)} entities in {result.scan_time_ms:.1f}ms"
        )
        return result
