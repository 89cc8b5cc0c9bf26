"""Roster seed loading."""
import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Union

from phased_voting.shared.models import Participant, new_participant

# Accepted spellings per field; the legacy spreadsheet export used the right-hand names
FIELD_ALIASES = {
    'externalId': ('externalId', 'external_id', 'userId'),
    'secret': ('secret', 'Password', 'roll_no'),
    'displayName': ('displayName', 'display_name', 'Name', 'name'),
}


def _pick(entry: Dict[str, Any], field: str) -> Any:
    for alias in FIELD_ALIASES[field]:
        if entry.get(alias) not in (None, ''):
            return entry[alias]
    raise ValueError(f"Roster entry is missing '{field}': {entry!r}")


def parse_roster_seed(entries: Iterable[Dict[str, Any]]) -> List[Participant]:
    """
    Build zeroed participants from raw seed entries.

    Args:
        entries: Dicts with externalId, secret and displayName (or their aliases)

    Returns:
        List of participants, document id = external id
    """
    return [
        new_participant(_pick(entry, 'externalId'), _pick(entry, 'secret'), _pick(entry, 'displayName'))
        for entry in entries
    ]


def load_roster_seed(path: Union[str, Path]) -> List[Participant]:
    """
    Read a roster seed file.

    JSON format: either a list of entries or {"participants": [...]}.
    """
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)

    if isinstance(data, dict) and 'participants' in data:
        data = data['participants']
    if not isinstance(data, list):
        raise ValueError(f"Unexpected roster format in {path}: expected a list of participants")

    return parse_roster_seed(data)
