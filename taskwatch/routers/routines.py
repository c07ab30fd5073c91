"""Routines router: repeating session rules, guides and guide actions."""
from fastapi import APIRouter, Depends, HTTPException, status, Query, Response
from typing import Dict, Any

from taskwatch.schemas.routines import (
    ActiveUpdate,
    EndBoundaryUpdate,
    EntryMatch,
    OccurrenceConfirm,
    OccurrenceReschedule,
    OccurrenceSkip,
    RoutineCreate,
)
from taskwatch.services.exception_store import ExceptionStore
from taskwatch.services.guide_service import GuideService
from taskwatch.services.repeating_session_service import RepeatingSessionService
from taskwatch.middleware.auth import get_current_user, verify_user_access, CurrentUser
from taskwatch.dependencies import get_exception_store, get_guide_service, get_repeating_session_service

router = APIRouter(tags=["Routines"])  # No prefix since main.py adds /api prefix


def _rule_not_found(rule_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Repeating rule {rule_id} not found"
    )


@router.get("/{user_id}/routines", response_model=Dict[str, Any])
async def list_routines(
    user_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    service: RepeatingSessionService = Depends(get_repeating_session_service),
):
    """List the user's repeating rules."""
    verify_user_access(user_id, current_user)
    rules = service.list_rules(user_id)
    return {
        "rules": [rule.to_cache_dict() for rule in rules],
        "count": len(rules)
    }


@router.post("/{user_id}/routines", response_model=Dict[str, Any], status_code=status.HTTP_201_CREATED)
async def create_routine(
    user_id: str,
    payload: RoutineCreate,
    current_user: CurrentUser = Depends(get_current_user),
    service: RepeatingSessionService = Depends(get_repeating_session_service),
):
    """Turn a logged session into a repeating rule."""
    verify_user_access(user_id, current_user)
    rule = service.create_rule_for_entry(
        user_id,
        payload.entry,
        payload.frequency,
        weekly_days=payload.weekly_days,
        monthly_pattern=payload.monthly_pattern,
        end_date_ms=payload.end_date_ms,
        end_after_occurrences=payload.end_after_occurrences,
        repeat_every=payload.repeat_every,
        timezone=payload.timezone,
    )
    return rule.to_cache_dict()


@router.post("/{user_id}/routines/deactivate-matching", response_model=Dict[str, Any])
async def deactivate_matching_routines(
    user_id: str,
    payload: EntryMatch,
    current_user: CurrentUser = Depends(get_current_user),
    service: RepeatingSessionService = Depends(get_repeating_session_service),
):
    """Stop suggesting every active rule that matches a logged session."""
    verify_user_access(user_id, current_user)
    return {"rule_ids": service.deactivate_matching_rules_for_entry(user_id, payload.entry)}


@router.post("/{user_id}/routines/delete-matching", response_model=Dict[str, Any])
async def delete_matching_routines(
    user_id: str,
    payload: EntryMatch,
    current_user: CurrentUser = Depends(get_current_user),
    service: RepeatingSessionService = Depends(get_repeating_session_service),
):
    """Delete every rule that matches a logged session."""
    verify_user_access(user_id, current_user)
    return {"rule_ids": service.delete_matching_rules_for_entry(user_id, payload.entry)}


@router.get("/{user_id}/routines/guides", response_model=Dict[str, Any])
async def list_guides(
    user_id: str,
    start_ms: int = Query(..., ge=0, description="Window start (epoch ms, inclusive)"),
    end_ms: int = Query(..., ge=0, description="Window end (epoch ms, exclusive)"),
    current_user: CurrentUser = Depends(get_current_user),
    guides: GuideService = Depends(get_guide_service),
):
    """Synthesize the unconfirmed occurrences of every active rule in a window."""
    verify_user_access(user_id, current_user)
    items = guides.guides_for_window(user_id, start_ms, end_ms)
    return {
        "guides": [guide.model_dump() for guide in items],
        "count": len(items)
    }


@router.get("/{user_id}/routines/exceptions", response_model=Dict[str, Any])
async def list_exceptions(
    user_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    exceptions: ExceptionStore = Depends(get_exception_store),
):
    """List recorded skips and reschedules."""
    verify_user_access(user_id, current_user)
    items = exceptions.list_exceptions(user_id)
    return {
        "exceptions": [item.model_dump() for item in items],
        "count": len(items)
    }


@router.post("/{user_id}/routines/sync", response_model=Dict[str, Any])
async def sync_routines(
    user_id: str,
    strict: bool = Query(False, description="Fail instead of keeping rules local when the database rejects them"),
    current_user: CurrentUser = Depends(get_current_user),
    service: RepeatingSessionService = Depends(get_repeating_session_service),
):
    """Push locally cached rules to the database and report remapped ids."""
    verify_user_access(user_id, current_user)
    id_remap = service.push_local_rules(user_id, strict=strict)
    return {
        "skipped": id_remap is None,
        "id_remap": id_remap or {}
    }


@router.delete("/{user_id}/routines/confirmed/{entry_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_confirmed_occurrence(
    user_id: str,
    entry_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    guides: GuideService = Depends(get_guide_service),
):
    """Undo a confirmation so the occurrence shows up as a guide again."""
    verify_user_access(user_id, current_user)
    if not guides.remove_confirmed_occurrence(user_id, entry_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Confirmed occurrence not found"
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put("/{user_id}/routines/{rule_id}/end", response_model=Dict[str, Any])
async def update_routine_end(
    user_id: str,
    rule_id: str,
    payload: EndBoundaryUpdate,
    current_user: CurrentUser = Depends(get_current_user),
    service: RepeatingSessionService = Depends(get_repeating_session_service),
):
    """Bound a rule: an explicit end, stop after a local date, or stop at a selected occurrence."""
    verify_user_access(user_id, current_user)
    if payload.after_occurrence_date is not None:
        ok = service.set_repeat_to_none_after_occurrence(user_id, rule_id, payload.after_occurrence_date)
    elif payload.after_timestamp_ms is not None:
        ok = service.set_repeat_to_none_after_timestamp(user_id, rule_id, payload.after_timestamp_ms)
    else:
        ok = service.update_end_date(user_id, rule_id, payload.end_at_ms)
    if not ok:
        raise _rule_not_found(rule_id)
    return {"success": True, "rule_id": rule_id}


@router.patch("/{user_id}/routines/{rule_id}/active", response_model=Dict[str, Any])
async def set_routine_active(
    user_id: str,
    rule_id: str,
    payload: ActiveUpdate,
    current_user: CurrentUser = Depends(get_current_user),
    service: RepeatingSessionService = Depends(get_repeating_session_service),
):
    """Activate or deactivate a rule without deleting it."""
    verify_user_access(user_id, current_user)
    if payload.is_active:
        ok = service.set_active(user_id, rule_id, True)
    else:
        ok = service.deactivate_rule(user_id, rule_id)
    if not ok:
        raise _rule_not_found(rule_id)
    return {"success": True, "rule_id": rule_id, "is_active": payload.is_active}


@router.delete("/{user_id}/routines/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_routine(
    user_id: str,
    rule_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    service: RepeatingSessionService = Depends(get_repeating_session_service),
):
    """Delete a rule."""
    verify_user_access(user_id, current_user)
    if not service.delete_rule(user_id, rule_id):
        raise _rule_not_found(rule_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{user_id}/routines/{rule_id}/skip", response_model=Dict[str, Any])
async def skip_occurrence(
    user_id: str,
    rule_id: str,
    payload: OccurrenceSkip,
    current_user: CurrentUser = Depends(get_current_user),
    guides: GuideService = Depends(get_guide_service),
):
    """Skip one occurrence of a rule."""
    verify_user_access(user_id, current_user)
    result = guides.skip_occurrence(user_id, rule_id, payload.occurrence_date, notes=payload.notes)
    return {"exception": result.exception.model_dump(), "retired": result.retired}


@router.post("/{user_id}/routines/{rule_id}/reschedule", response_model=Dict[str, Any])
async def reschedule_occurrence(
    user_id: str,
    rule_id: str,
    payload: OccurrenceReschedule,
    current_user: CurrentUser = Depends(get_current_user),
    guides: GuideService = Depends(get_guide_service),
):
    """Move one occurrence of a rule to a new time."""
    verify_user_access(user_id, current_user)
    result = guides.reschedule_occurrence(
        user_id,
        rule_id,
        payload.occurrence_date,
        payload.new_started_at,
        new_ended_at=payload.new_ended_at,
        notes=payload.notes,
    )
    return {"exception": result.exception.model_dump(), "retired": result.retired}


@router.post("/{user_id}/routines/{rule_id}/confirm", response_model=Dict[str, Any], status_code=status.HTTP_201_CREATED)
async def confirm_occurrence(
    user_id: str,
    rule_id: str,
    payload: OccurrenceConfirm,
    current_user: CurrentUser = Depends(get_current_user),
    guides: GuideService = Depends(get_guide_service),
):
    """Log a session in place of one generated occurrence."""
    verify_user_access(user_id, current_user)
    result = guides.confirm_occurrence(
        user_id,
        rule_id,
        payload.original_time,
        started_at=payload.started_at,
        ended_at=payload.ended_at,
    )
    return {"entry": result.entry.model_dump(mode="json"), "retired": result.retired}
