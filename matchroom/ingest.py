from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

import pandas as pd

from .data_models import Profile


FIELD_ALIASES: Dict[str, List[str]] = {
    "user_id": ["user_id", "id", "userId", "User ID"],
    "first_name": ["first_name", "firstName", "First name"],
    "last_name": ["last_name", "lastName", "Last name"],
    "job_title": ["job_title", "jobTitle", "role", "Role"],
    "company": ["company", "Company"],
    "industry": ["industry", "Industry"],
    "goals": ["goals", "Goals", "networking_goals"],
    "skills": ["skills", "Skills"],
    "bio": ["bio", "Bio", "summary"],
    "experience": ["experience", "Experience"],
    "interests": ["interests", "Interests"],
    "event_id": ["event_id", "eventId", "Event ID"],
}


class ProfileStore(Protocol):
    async def get_profile(self, user_id: str) -> Profile:
        ...


class EventRoster(Protocol):
    async def list_active_participants(self, event_id: str) -> List[str]:
        ...


def get_alias_column(df: pd.DataFrame, key: str) -> Optional[str]:
    for candidate in FIELD_ALIASES.get(key, []):
        if candidate in df.columns:
            return candidate
    return None


def resolve_aliases(df: pd.DataFrame) -> Dict[str, Optional[str]]:
    return {key: get_alias_column(df, key) for key in FIELD_ALIASES}


def parse_list_field(val: Any) -> Tuple[str, ...]:
    """Accept real lists, JSON-encoded lists (legacy exports) or comma/semicolon text."""
    if val is None or (isinstance(val, float) and pd.isna(val)):
        return ()
    if isinstance(val, (list, tuple)):
        items = [str(x) for x in val]
    else:
        s = str(val).strip()
        items = []
        if s.startswith("[") and s.endswith("]"):
            try:
                arr = json.loads(s)
                if isinstance(arr, list):
                    items = [str(x) for x in arr]
            except ValueError:
                items = []
        if not items:
            items = re.split(r"[;,]", s.strip("[]"))
    cleaned = [re.sub(r"\s+", " ", x).strip().strip("\"'") for x in items]
    return tuple(x for x in cleaned if x)


def _text(val: Any) -> str:
    if val is None or (isinstance(val, float) and pd.isna(val)):
        return ""
    s = re.sub(r"\s+", " ", str(val)).strip()
    return "" if s in ("nan", "None", "NULL") else s


def clean_roster_df(df: pd.DataFrame) -> pd.DataFrame:
    """Strip stray whitespace from headers (spreadsheet exports carry it)."""
    out = df.copy()
    out.columns = [col.strip() if isinstance(col, str) else col for col in out.columns]
    return out


def profile_from_row(row: pd.Series, alias_map: Dict[str, Optional[str]]) -> Profile:
    def _get(key: str) -> Any:
        col = alias_map.get(key)
        return row.get(col) if col is not None else None

    user_id = _text(_get("user_id"))
    if not user_id:
        raise ValueError(f"Row {row.name} has no user id")
    bio = _text(_get("bio")) or None
    experience = _text(_get("experience")) or None
    return Profile(
        user_id=user_id,
        first_name=_text(_get("first_name")),
        last_name=_text(_get("last_name")),
        job_title=_text(_get("job_title")),
        company=_text(_get("company")),
        industry=_text(_get("industry")),
        goals=parse_list_field(_get("goals")),
        skills=parse_list_field(_get("skills")),
        bio=bio,
        experience=experience,
        interests=parse_list_field(_get("interests")),
    )


def profiles_from_frame(df: pd.DataFrame) -> List[Profile]:
    df = clean_roster_df(df)
    alias_map = resolve_aliases(df)
    if alias_map.get("user_id") is None:
        raise KeyError(f"No user id column found; expected one of {FIELD_ALIASES['user_id']}")
    return [profile_from_row(row, alias_map) for _, row in df.iterrows()]


class InMemoryProfileStore:
    def __init__(self, profiles: Iterable[Profile] = ()):
        self._profiles: Dict[str, Profile] = {p.user_id: p for p in profiles}

    def add(self, profile: Profile) -> None:
        self._profiles[profile.user_id] = profile

    def user_ids(self) -> List[str]:
        return list(self._profiles)

    async def get_profile(self, user_id: str) -> Profile:
        try:
            return self._profiles[user_id]
        except KeyError:
            raise KeyError(f"No profile for user {user_id}") from None


class StaticEventRoster:
    """Roster kept in memory; ``set_active`` simulates joins and leaves."""

    def __init__(self, rosters: Optional[Dict[str, Sequence[str]]] = None):
        self._rosters: Dict[str, List[str]] = {k: list(v) for k, v in (rosters or {}).items()}

    def set_active(self, event_id: str, user_ids: Sequence[str]) -> None:
        self._rosters[event_id] = list(user_ids)

    async def list_active_participants(self, event_id: str) -> List[str]:
        return list(self._rosters.get(event_id, []))


def load_roster_csv(csv_path: Path, event_id: Optional[str] = None) -> Tuple[InMemoryProfileStore, StaticEventRoster]:
    """Build a profile store and an event roster from one attendee CSV.

    When the CSV has an event id column, rows are grouped per event; otherwise
    every row is registered for ``event_id`` (default ``"default"``).
    """
    df = clean_roster_df(pd.read_csv(csv_path, dtype=str))
    profiles = profiles_from_frame(df)
    store = InMemoryProfileStore(profiles)

    event_col = get_alias_column(df, "event_id")
    rosters: Dict[str, List[str]] = {}
    if event_col is not None:
        for profile, (_, row) in zip(profiles, df.iterrows()):
            rosters.setdefault(_text(row[event_col]) or "default", []).append(profile.user_id)
    else:
        rosters[event_id or "default"] = [p.user_id for p in profiles]
    return store, StaticEventRoster(rosters)
