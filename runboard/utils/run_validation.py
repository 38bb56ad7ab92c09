"""
Run field normalization and validation.

Used by run intake before a run is stored and by the reconciliation engine to
check edit patches before they are persisted.
"""

import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from runboard.constants import BoardKind, OwnershipConstants, RegistryDefaults, RunMode
from runboard.utils.group_key import normalize_board_kind, normalize_mode, normalize_ref
from runboard.utils.time_parser import normalize_time

DATE_PATTERN = re.compile(r'^\d{4}-\d{2}-\d{2}$')

# Fields a moderator may change through edit_run
EDITABLE_FIELDS = frozenset({
    'owner_display_name', 'co_owner_display_name', 'board_kind', 'category_ref',
    'platform_ref', 'level_ref', 'mode', 'time', 'submitted_date', 'video_url', 'comment',
    'fallback_category_name', 'fallback_platform_name', 'fallback_level_name',
})

# Fields whose edit requires the merged run to be re-checked
SHAPE_FIELDS = frozenset({'mode', 'co_owner_display_name', 'board_kind', 'level_ref', 'fallback_level_name'})

# Fields that move a run to a different comparison group or change its points
RANKING_FIELDS = frozenset({
    'board_kind', 'category_ref', 'platform_ref', 'level_ref', 'mode', 'time',
    'fallback_category_name', 'fallback_platform_name',
})


def normalize_player_name(name: Optional[str]) -> str:
    if not name:
        return RegistryDefaults.UNKNOWN_PLAYER
    normalized = str(name).strip()
    return normalized or RegistryDefaults.UNKNOWN_PLAYER


def today() -> str:
    return datetime.now(timezone.utc).strftime('%Y-%m-%d')


def normalize_date(date: Optional[str]) -> str:
    """Normalize to YYYY-MM-DD, falling back to today for missing or malformed dates."""
    if not date:
        return today()
    normalized = str(date).strip()
    if 'T' in normalized:
        normalized = normalized.split('T')[0]
    if DATE_PATTERN.match(normalized):
        return normalized
    return today()


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize_run_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """
    Normalize raw run fields (submission form or import candidate).

    Unknown keys are passed through untouched. The time is left as given when
    it cannot be parsed so that validation can report it.
    """
    normalized = dict(fields)
    normalized['owner_display_name'] = normalize_player_name(fields.get('owner_display_name'))
    normalized['board_kind'] = normalize_board_kind(fields.get('board_kind'))
    normalized['mode'] = normalize_mode(fields.get('mode'))
    normalized['category_ref'] = normalize_ref(fields.get('category_ref'))
    normalized['platform_ref'] = normalize_ref(fields.get('platform_ref'))
    normalized['level_ref'] = (
        normalize_ref(fields.get('level_ref'))
        if normalized['board_kind'] in BoardKind.LEVEL_BOARDS else ""
    )
    normalized['submitted_date'] = normalize_date(fields.get('submitted_date'))
    normalized['verified'] = bool(fields.get('verified', False))

    if normalized['mode'] == RunMode.COOP and fields.get('co_owner_display_name'):
        normalized['co_owner_display_name'] = normalize_player_name(fields.get('co_owner_display_name'))
    else:
        normalized['co_owner_display_name'] = None

    try:
        normalized['time'] = normalize_time(fields.get('time'))
    except ValueError:
        normalized['time'] = fields.get('time')

    for key in ('fallback_category_name', 'fallback_platform_name', 'fallback_level_name', 'import_ref'):
        normalized[key] = _optional_text(fields.get(key))

    return normalized


def validate_run_fields(fields: Dict[str, Any], imported: bool = False) -> List[str]:
    """
    Validate normalized run fields, returning a list of error messages.

    Imported runs may omit category/platform ids when a fallback name is present.
    """
    errors = []

    owner = fields.get('owner_display_name')
    if not owner or not str(owner).strip():
        errors.append("Player name is required")

    if not fields.get('category_ref') and not (imported and fields.get('fallback_category_name')):
        errors.append("Category is required")

    if not fields.get('platform_ref') and not (imported and fields.get('fallback_platform_name')):
        errors.append("Platform is required")

    errors.extend(_validate_common(fields))
    errors.extend(_validate_shape(fields, imported))
    return errors


def validate_edited_run(run) -> List[str]:
    """
    Validate the merged state of a run after an edit patch is applied.

    A patch can be fine on its own yet leave the run inconsistent, e.g.
    switching a solo run to co-op without naming a partner.
    """
    state = {
        'mode': run.mode,
        'co_owner_display_name': run.co_owner_display_name,
        'board_kind': run.board_kind,
        'level_ref': run.level_ref,
        'fallback_level_name': run.fallback_level_name,
    }
    return _validate_shape(state, run.owner_ref == OwnershipConstants.IMPORTED)


def _validate_shape(fields: Dict[str, Any], imported: bool) -> List[str]:
    errors = []
    if fields.get('mode') == RunMode.COOP and not fields.get('co_owner_display_name'):
        errors.append("Co-op runs require a second player name")

    if (fields.get('board_kind') in BoardKind.LEVEL_BOARDS
            and not fields.get('level_ref')
            and not (imported and fields.get('fallback_level_name'))):
        errors.append("Level is required for individual-level and community-golds runs")
    return errors


def validate_patch(patch: Dict[str, Any]) -> List[str]:
    """Validate an edit patch, returning a list of error messages."""
    if not patch:
        return ["Edit contains no changes"]

    errors = [f"Field '{key}' cannot be edited" for key in patch if key not in EDITABLE_FIELDS]

    if 'owner_display_name' in patch and not str(patch['owner_display_name'] or '').strip():
        errors.append("Player name is required")
    if 'category_ref' in patch and not normalize_ref(patch['category_ref']):
        errors.append("Category is required")
    if 'platform_ref' in patch and not normalize_ref(patch['platform_ref']):
        errors.append("Platform is required")

    errors.extend(_validate_common(patch))
    return errors


def _validate_common(fields: Dict[str, Any]) -> List[str]:
    errors = []

    if 'time' in fields:
        time_value = fields.get('time')
        if not time_value or not str(time_value).strip():
            errors.append("Time is required")
        else:
            try:
                normalize_time(time_value)
            except ValueError:
                errors.append("Time must be in format HH:MM:SS")

    date = fields.get('submitted_date')
    if date and not DATE_PATTERN.match(str(date).strip()):
        errors.append("Date must be in format YYYY-MM-DD")

    mode = fields.get('mode')
    if mode and str(mode).lower().strip() not in ('solo', 'co-op', 'coop'):
        errors.append("Run type must be 'solo' or 'co-op'")

    board_kind = fields.get('board_kind')
    if board_kind and normalize_board_kind(board_kind) == BoardKind.REGULAR \
            and str(board_kind).lower().strip() != BoardKind.REGULAR:
        errors.append("Leaderboard type must be 'regular', 'individual-level', or 'community-golds'")

    return errors


def normalize_patch(patch: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize the values of a validated edit patch."""
    normalized = {}
    for key, value in patch.items():
        if key == 'time':
            normalized[key] = normalize_time(value)
        elif key == 'board_kind':
            normalized[key] = normalize_board_kind(value)
        elif key == 'mode':
            normalized[key] = normalize_mode(value)
        elif key in ('category_ref', 'platform_ref', 'level_ref'):
            normalized[key] = normalize_ref(value)
        elif key == 'owner_display_name':
            normalized[key] = normalize_player_name(value)
        elif key == 'co_owner_display_name':
            normalized[key] = _optional_text(value)
        elif key == 'submitted_date':
            normalized[key] = normalize_date(value)
        else:
            normalized[key] = value
    return normalized
