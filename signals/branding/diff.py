"""
Branding diff engine.

Payload schema::

    {
        "color_scheme": "light" | "dark" | "unknown",
        "colors": {"primary", "secondary", "accent", "background",
                   "text_primary", "text_secondary"},
        "fonts": ["Inter", ...],
        "logo": url or None,
    }

A field that is missing on either side is skipped rather than reported.
"""

from typing import Any, Dict, List, Optional

from watchcore.interfaces import DiffEngine
from watchcore.models import ChangeRecord, DiffResult, Severity, SignalType

COLOR_CHANNELS = (
    "primary",
    "secondary",
    "accent",
    "background",
    "text_primary",
    "text_secondary",
)
KNOWN_SCHEMES = {"light", "dark"}
REFRESH_THRESHOLD = 3

IMPLICATIONS = {
    "light_to_dark": "Adopting a sleek, modern dark theme, premium positioning",
    "dark_to_light": "Moving to a lighter, more accessible brand image",
    "primary": "Primary brand color change signals potential rebrand",
    "color": "Color tweak, likely minor design refresh",
    "logo": "New logo detected, major brand overhaul likely incoming",
    "fonts": "Typography change, design system refresh in progress",
    "refresh": "Multiple color changes, significant brand refresh",
}

HIGH, MEDIUM = 0.9, 0.6


def _color(value: Any) -> Optional[str]:
    if not isinstance(value, str) or not value.strip():
        return None
    return value.strip().lower()


def _fonts(payload: Dict[str, Any]) -> List[str]:
    return sorted({f.strip() for f in payload.get("fonts") or [] if isinstance(f, str) and f.strip()})


class BrandingDiffEngine(DiffEngine):
    no_changes_summary = "No branding changes detected"

    @property
    def signal(self) -> SignalType:
        return SignalType.BRANDING

    def compare(self, old: Optional[Dict[str, Any]], new: Dict[str, Any]) -> DiffResult:
        if old is None:
            return self.initial()
        new = new or {}

        changes: List[ChangeRecord] = []
        changes.extend(self._scheme(old, new))
        changes.extend(self._colors(old, new))
        changes.extend(self._fonts(old, new))
        changes.extend(self._logo(old, new))
        return self.summarize(changes)

    def _scheme(self, old, new) -> List[ChangeRecord]:
        before, after = old.get("color_scheme"), new.get("color_scheme")
        if before not in KNOWN_SCHEMES or after not in KNOWN_SCHEMES or before == after:
            return []
        key = f"{before}_to_{after}"
        return [self.record(
            "theme_change", "color_scheme", before, after, HIGH,
            f"Color scheme changed from {before} to {after}",
            severity=Severity.HIGH,
            details={"implication": IMPLICATIONS[key], "direction": key},
        )]

    def _colors(self, old, new) -> List[ChangeRecord]:
        old_colors, new_colors = old.get("colors") or {}, new.get("colors") or {}
        changes = []
        for channel in COLOR_CHANNELS:
            before, after = _color(old_colors.get(channel)), _color(new_colors.get(channel))
            if before is None or after is None or before == after:
                continue
            label = channel.replace("_", " ")
            if channel == "primary":
                score, severity, implication = HIGH, Severity.HIGH, IMPLICATIONS["primary"]
                description = f"Primary brand color changed from {before} to {after}"
            else:
                score, severity, implication = MEDIUM, Severity.MEDIUM, IMPLICATIONS["color"]
                description = f"{label.capitalize()} color changed from {before} to {after}"
            changes.append(self.record(
                "color_change", f"colors.{channel}", before, after, score, description,
                severity=severity,
                details={"channel": channel, "implication": implication},
            ))

        if len(changes) >= REFRESH_THRESHOLD:
            channels = [c.details["channel"] for c in changes]
            changes.append(self.record(
                "refresh", "colors", "previous palette", "new palette", HIGH,
                f"Multiple colors changed: {', '.join(channels)}",
                severity=Severity.HIGH,
                magnitude=float(len(channels)),
                details={"channels": channels, "implication": IMPLICATIONS["refresh"]},
            ))
        return changes

    def _fonts(self, old, new) -> List[ChangeRecord]:
        before, after = _fonts(old), _fonts(new)
        if not before or not after or before == after:
            return []
        return [self.record(
            "font_change", "fonts", before, after, MEDIUM,
            f"Fonts changed from {', '.join(before)} to {', '.join(after)}",
            severity=Severity.MEDIUM,
            details={"implication": IMPLICATIONS["fonts"]},
        )]

    def _logo(self, old, new) -> List[ChangeRecord]:
        before, after = old.get("logo"), new.get("logo")
        if not before or not after or before == after:
            return []
        return [self.record(
            "logo_change", "logo", before, after, HIGH,
            "Logo changed",
            severity=Severity.HIGH,
            details={"implication": IMPLICATIONS["logo"]},
        )]
