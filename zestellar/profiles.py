from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping

from .parameters import ExtractionParameters, FilterParameters, SolveParameters


@dataclass(frozen=True)
class ParameterProfile:
    id: str
    label: str
    notes: str = ""
    extraction: Mapping[str, Any] = field(default_factory=dict)
    filtering: Mapping[str, Any] = field(default_factory=dict)
    solve: Mapping[str, Any] = field(default_factory=dict)

    def build(self) -> SolveParameters:
        """Return a fresh SolveParameters carrying this profile's overrides."""
        extraction = replace(ExtractionParameters(), **dict(self.extraction))
        filtering = replace(FilterParameters(), **dict(self.filtering))
        return replace(
            SolveParameters(),
            profile=self.id,
            extraction=extraction,
            filtering=filtering,
            **dict(self.solve),
        )


def list_profiles() -> List[ParameterProfile]:
    """Return the built-in parameter profiles.

    Solving profiles tune the search (parallelism, field width limits);
    extraction profiles tune detection for a given star size.
    """
    return [
        ParameterProfile(
            id="default",
            label="Default",
            notes="Balanced extraction, parallel search over all plausible indexes.",
        ),
        ParameterProfile(
            id="single_thread_solving",
            label="Single thread solving",
            notes="Sequential search; fully deterministic result ordering.",
            solve={"parallel": False},
        ),
        ParameterProfile(
            id="parallel_large_scale",
            label="Parallel large scale",
            notes="Wide fields (1 degree and above).",
            solve={"parallel": True, "min_width": 1.0, "max_width": 180.0},
        ),
        ParameterProfile(
            id="parallel_small_scale",
            label="Parallel small scale",
            notes="Narrow fields (up to 10 degrees).",
            solve={"parallel": True, "min_width": 0.1, "max_width": 10.0},
        ),
        ParameterProfile(
            id="all_stars",
            label="All stars",
            notes="Keep every detection, including elongated and saturated sources.",
            filtering={"max_ellipse": 0.0, "saturation_limit": 0.0, "keep_num": 0},
        ),
        ParameterProfile(
            id="small_stars",
            label="Small stars",
            extraction={"fwhm": 1.0, "min_area": 3, "r_min": 2.0},
            filtering={"max_ellipse": 1.5, "saturation_limit": 98.0},
        ),
        ParameterProfile(
            id="mid_stars",
            label="Mid-sized stars",
            extraction={"fwhm": 4.0, "min_area": 20, "r_min": 3.5},
            filtering={"max_ellipse": 1.5, "saturation_limit": 98.0},
        ),
        ParameterProfile(
            id="big_stars",
            label="Big stars",
            extraction={"fwhm": 8.0, "min_area": 40, "r_min": 5.0},
            filtering={"max_ellipse": 1.5, "saturation_limit": 98.0},
        ),
    ]


def _profile_map() -> Dict[str, ParameterProfile]:
    return {profile.id: profile for profile in list_profiles()}


def get_profile(name: str) -> ParameterProfile:
    key = str(name or "default").strip().lower().replace("-", "_").replace(" ", "_")
    profiles = _profile_map()
    try:
        return profiles[key]
    except KeyError:
        raise ValueError(f"unknown profile {name!r}; choose from {', '.join(sorted(profiles))}") from None
