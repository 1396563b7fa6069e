"""
Squad API Routes.

Endpoints for running squads inside an encounter:
- Create encounters and simulate host writes (hp, initiative, removal)
- Create, edit, delete groups and move combatants between them
- Roll, finalize, override and reset group initiative
- Morale checks and auto-prompts
- Read the notification feed

Routes that change squad state on the GM's behalf require the
``X-Squad-Role: gm`` header.
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, Field

from squad_engine.config import get_settings
from squad_engine.core.errors import PermissionDeniedError
from squad_engine.core.session import Member
from squad_engine.core.squad_config import SquadConfig
from squad_engine.storage import (
    create_encounter,
    get_coordinator,
    get_feed,
    get_session,
    remove_encounter,
)

logger = logging.getLogger("squad_engine.api")

router = APIRouter()

GM_ROLE = "gm"


def require_gm(x_squad_role: Optional[str] = Header(default=None)) -> str:
    """Dependency for privileged routes."""
    if (x_squad_role or "").lower() != GM_ROLE:
        raise PermissionDeniedError("perform this action")
    return GM_ROLE


# =============================================================================
# Request/Response Models
# =============================================================================

class MemberData(BaseModel):
    """A combatant supplied by the host."""
    id: Optional[str] = None
    name: str
    initiative: Optional[float] = None
    dex_mod: int = 0
    dex_score: int = 10
    hp: Optional[int] = None
    wis_mod: Any = 0
    challenge_rating: Any = 0
    group_id: Optional[str] = None


class CreateEncounterRequest(BaseModel):
    """Request to open an encounter."""
    members: List[MemberData] = Field(default_factory=list)
    config: Optional[Dict[str, Any]] = None


class EncounterResponse(BaseModel):
    session_id: str
    started: bool
    members: List[Dict[str, Any]]
    groups: Dict[str, Dict[str, Any]]
    index: List[Dict[str, Any]]


class CreateGroupRequest(BaseModel):
    name: str
    member_ids: List[str] = Field(default_factory=list)
    img: Optional[str] = None
    color: Optional[str] = None
    hidden: bool = False
    pinned: Optional[bool] = None
    discipline: str = "standard"


class UpdateGroupRequest(BaseModel):
    name: Optional[str] = None
    pinned: Optional[bool] = None
    hidden: Optional[bool] = None
    color: Optional[str] = None
    img: Optional[str] = None
    discipline: Optional[str] = None
    mob_confidence_divisor: Optional[int] = None


class RollGroupRequest(BaseModel):
    mode: str = "normal"  # normal, advantage, disadvantage


class SetInitiativeRequest(BaseModel):
    value: float


class HpUpdate(BaseModel):
    hp: Optional[int] = None


class InitiativeUpdate(BaseModel):
    initiative: Optional[float] = None


class PromptStatusResponse(BaseModel):
    group_id: str
    should_prompt: bool
    prompted: bool


def _encounter_response(session_id: str) -> EncounterResponse:
    session = get_session(session_id)
    coordinator = get_coordinator(session_id)
    snapshot = session.snapshot()
    return EncounterResponse(
        session_id=snapshot["session_id"],
        started=snapshot["started"],
        members=snapshot["members"],
        groups=snapshot["groups"],
        index=[entry.to_dict() for entry in coordinator.group_index().values()],
    )


# =============================================================================
# Encounters
# =============================================================================

@router.post("/encounters", response_model=EncounterResponse)
async def create_encounter_route(request: CreateEncounterRequest):
    """Open an encounter with the given combatants."""
    members = [Member.from_dict(m.model_dump()) for m in request.members]
    if request.config is not None:
        config = SquadConfig.from_dict(request.config)
    else:
        config = SquadConfig.from_settings(get_settings())
    coordinator = create_encounter(members=members, config=config)
    return _encounter_response(coordinator.session.session_id)


@router.get("/encounters/{session_id}", response_model=EncounterResponse)
async def get_encounter(session_id: str):
    return _encounter_response(session_id)


@router.delete("/encounters/{session_id}")
async def delete_encounter(session_id: str, role: str = Depends(require_gm)):
    get_session(session_id)
    remove_encounter(session_id)
    return {"success": True, "session_id": session_id}


@router.post("/encounters/{session_id}/start")
async def start_encounter(session_id: str, role: str = Depends(require_gm)):
    """Start the encounter; records each group's starting size."""
    session = get_session(session_id)
    await session.start_encounter()
    return {"success": True, "groups": session.groups()}


@router.post("/encounters/{session_id}/end")
async def end_encounter(session_id: str, role: str = Depends(require_gm)):
    """End the encounter; forgets morale prompts."""
    session = get_session(session_id)
    await session.end_encounter()
    return {"success": True}


@router.get("/encounters/{session_id}/status")
async def encounter_status(session_id: str):
    return get_coordinator(session_id).status()


@router.get("/encounters/{session_id}/notifications")
async def notifications(session_id: str, since: int = 0):
    feed = get_feed(session_id)
    return {"count": len(feed.entries), "notifications": feed.since(since)}


@router.post("/encounters/{session_id}/roll-all")
async def roll_all(session_id: str, role: str = Depends(require_gm)):
    """Roll initiative for everyone missing it, then settle every group once."""
    coordinator = get_coordinator(session_id)
    outcomes = await coordinator.roll_all()
    return {
        "rolled": len(outcomes),
        "groups": {
            gid: (result.to_dict() if result is not None else None)
            for gid, result in coordinator.bulk.last_results.items()
        },
    }


# =============================================================================
# Host writes
# =============================================================================

@router.post("/encounters/{session_id}/members")
async def add_member(session_id: str, member: MemberData):
    session = get_session(session_id)
    created = await session.add_member(Member.from_dict(member.model_dump()))
    return created.to_dict()


@router.delete("/encounters/{session_id}/members/{member_id}")
async def remove_member(session_id: str, member_id: str):
    session = get_session(session_id)
    get_coordinator(session_id).require_member(member_id)
    await session.remove_member(member_id)
    return {"success": True, "member_id": member_id}


@router.put("/encounters/{session_id}/members/{member_id}/hp")
async def set_member_hp(session_id: str, member_id: str, update: HpUpdate):
    session = get_session(session_id)
    member = get_coordinator(session_id).require_member(member_id)
    await session.set_hp(member_id, update.hp)
    return member.to_dict()


@router.put("/encounters/{session_id}/members/{member_id}/initiative")
async def set_member_initiative(session_id: str, member_id: str, update: InitiativeUpdate):
    session = get_session(session_id)
    member = get_coordinator(session_id).require_member(member_id)
    await session.set_initiative(member_id, update.initiative)
    return member.to_dict()


# =============================================================================
# Groups
# =============================================================================

@router.get("/encounters/{session_id}/groups")
async def list_groups(session_id: str):
    coordinator = get_coordinator(session_id)
    return {
        "groups": coordinator.session.groups(),
        "index": [entry.to_dict() for entry in coordinator.group_index().values()],
    }


@router.post("/encounters/{session_id}/groups")
async def create_group(session_id: str, request: CreateGroupRequest, role: str = Depends(require_gm)):
    coordinator = get_coordinator(session_id)
    group_id = await coordinator.create_group(
        request.name,
        member_ids=request.member_ids,
        img=request.img,
        color=request.color,
        hidden=request.hidden,
        pinned=request.pinned,
        discipline=request.discipline,
    )
    return {"group_id": group_id, "group": coordinator.get_group(group_id).to_dict()}


@router.patch("/encounters/{session_id}/groups/{group_id}")
async def update_group(
    session_id: str, group_id: str, request: UpdateGroupRequest, role: str = Depends(require_gm)
):
    coordinator = get_coordinator(session_id)
    meta = await coordinator.update_group(group_id, **request.model_dump(exclude_unset=True))
    return {"group_id": group_id, "group": meta.to_dict()}


@router.delete("/encounters/{session_id}/groups/{group_id}")
async def delete_group(session_id: str, group_id: str, role: str = Depends(require_gm)):
    """Delete a group. Its members stay in the encounter, ungrouped."""
    coordinator = get_coordinator(session_id)
    unassigned = await coordinator.delete_group(group_id)
    return {"success": True, "unassigned": unassigned}


@router.put("/encounters/{session_id}/groups/{group_id}/members/{member_id}")
async def assign_member(session_id: str, group_id: str, member_id: str, role: str = Depends(require_gm)):
    coordinator = get_coordinator(session_id)
    result = await coordinator.assign_member(member_id, group_id)
    return {
        "member": coordinator.session.get_member(member_id).to_dict(),
        "finalized": result.to_dict() if result is not None else None,
    }


@router.delete("/encounters/{session_id}/members/{member_id}/group")
async def unassign_member(session_id: str, member_id: str, role: str = Depends(require_gm)):
    coordinator = get_coordinator(session_id)
    await coordinator.unassign_member(member_id)
    return {"member": coordinator.session.get_member(member_id).to_dict()}


# =============================================================================
# Group initiative
# =============================================================================

@router.post("/encounters/{session_id}/groups/{group_id}/roll")
async def roll_group(
    session_id: str, group_id: str, request: RollGroupRequest, role: str = Depends(require_gm)
):
    """Roll for members lacking initiative, then finalize the group."""
    coordinator = get_coordinator(session_id)
    result = await coordinator.roll_and_finalize(group_id, request.mode)
    return {"finalized": result is not None, "result": result.to_dict() if result is not None else None}


@router.post("/encounters/{session_id}/groups/{group_id}/finalize")
async def finalize_group(session_id: str, group_id: str, role: str = Depends(require_gm)):
    coordinator = get_coordinator(session_id)
    result = await coordinator.finalize(group_id)
    return {"finalized": result is not None, "result": result.to_dict() if result is not None else None}


@router.put("/encounters/{session_id}/groups/{group_id}/initiative")
async def set_group_initiative(
    session_id: str, group_id: str, request: SetInitiativeRequest, role: str = Depends(require_gm)
):
    coordinator = get_coordinator(session_id)
    result = await coordinator.set_group_initiative(group_id, request.value)
    return {"applied": result is not None, "result": result}


@router.delete("/encounters/{session_id}/groups/{group_id}/initiative")
async def reset_group_initiative(session_id: str, group_id: str, role: str = Depends(require_gm)):
    coordinator = get_coordinator(session_id)
    cleared = await coordinator.reset_group_initiative(group_id)
    return {"applied": cleared is not None, "cleared": cleared or 0}


# =============================================================================
# Morale
# =============================================================================

@router.post("/encounters/{session_id}/groups/{group_id}/morale")
async def roll_morale(session_id: str, group_id: str, role: str = Depends(require_gm)):
    coordinator = get_coordinator(session_id)
    result = await coordinator.roll_morale(group_id)
    return {"rolled": result is not None, "result": result.to_dict() if result is not None else None}


@router.get("/encounters/{session_id}/groups/{group_id}/morale/prompt", response_model=PromptStatusResponse)
async def prompt_status(session_id: str, group_id: str):
    coordinator = get_coordinator(session_id)
    return PromptStatusResponse(
        group_id=group_id,
        should_prompt=coordinator.should_auto_prompt(group_id),
        prompted=coordinator.prompts.is_prompted(group_id),
    )


@router.post("/encounters/{session_id}/groups/{group_id}/morale/prompt")
async def send_prompt(session_id: str, group_id: str, role: str = Depends(require_gm)):
    coordinator = get_coordinator(session_id)
    sent = await coordinator.send_auto_prompt(group_id)
    return {"sent": sent}


@router.delete("/encounters/{session_id}/groups/{group_id}/morale/prompt")
async def reset_prompt(session_id: str, group_id: str, role: str = Depends(require_gm)):
    coordinator = get_coordinator(session_id)
    await coordinator.reset_prompt_for_group(group_id)
    return {"success": True}
