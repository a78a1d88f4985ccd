"""
roster.py

Read-only roster entries supplied by the caller, plus scope filtering and
CSV loading for the command line tool.
"""
from dataclasses import dataclass
from typing import Iterable, List, Optional

import pandas as pd

from scan_errors import EmptyRosterError

NO_GROUP_FILTER = {"", "all"}


@dataclass(frozen=True)
class RosterEntry:
    id: str
    name: str
    group: Optional[str] = None

    @classmethod
    def from_dict(cls, d):
        return cls(id=str(d.get("id", "")).strip(),
                   name=str(d.get("name", "")).strip(),
                   group=(str(d["group"]).strip() if d.get("group") is not None else None))

    def to_dict(self):
        return {"id": self.id, "name": self.name, "group": self.group}


def has_group_filter(group: Optional[str]) -> bool:
    return group is not None and group.strip().lower() not in NO_GROUP_FILTER


def resolve_scope(roster: Iterable[RosterEntry], group: Optional[str] = None) -> List[RosterEntry]:
    """
    Entries of `roster` belonging to `group`, in roster order.
    No group (None, "" or "all") keeps the whole roster.
    """
    entries = list(roster)
    if has_group_filter(group):
        key = group.strip()
        entries = [e for e in entries if e.group == key]
    if not entries:
        if has_group_filter(group):
            raise EmptyRosterError(f"No people in group '{group}'")
        raise EmptyRosterError("Roster is empty")
    return entries


def load_roster_csv(csv_path) -> List[RosterEntry]:
    """Load `id,name,group` rows; `group` is optional."""
    try:
        df = pd.read_csv(csv_path, dtype=str, keep_default_na=False)
    except UnicodeDecodeError:
        df = pd.read_csv(csv_path, dtype=str, keep_default_na=False, encoding="latin1")
    df.columns = [str(c).strip().lower() for c in df.columns]
    if "name" not in df.columns:
        raise ValueError(f"Roster CSV must contain a 'name' column: {csv_path}")
    if "id" not in df.columns:
        df["id"] = [str(i + 1) for i in range(len(df))]
    entries = []
    for _, row in df.iterrows():
        group = row.get("group", "")
        entries.append(RosterEntry(id=str(row["id"]).strip(),
                                   name=str(row["name"]).strip(),
                                   group=group.strip() or None))
    return entries
