# assignments.py — Secret Santa core: balanced draw + audit
# Pure functions, no I/O. Storage and the bot call into this module.

import random
import logging
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Set, Iterable

logger = logging.getLogger(__name__)

MIN_PARTICIPANTS = 3
GIFTS_PER_PARTICIPANT_CHOICES = (1, 2, 3)

# ============================================================
# Types
# ============================================================
@dataclass(frozen=True)
class Participant:
    id: str
    name: str
    email: Optional[str] = None

    @property
    def label(self) -> str:
        return self.name or self.email or self.id

@dataclass(frozen=True)
class Assignment:
    giver_id: str
    receiver_id: str
    gift_number: int

# ============================================================
# Errors
# ============================================================
class AssignmentError(ValueError):
    pass

class InsufficientParticipants(AssignmentError):
    def __init__(self, participants: int, gifts_per_participant: int):
        self.participants = participants
        self.gifts_per_participant = gifts_per_participant
        need = max(MIN_PARTICIPANTS, gifts_per_participant + 1)
        super().__init__(
            f"Need at least {need} participants for {gifts_per_participant} "
            f"gift{'s' if gifts_per_participant != 1 else ''} per person (got {participants})"
        )

class AssignmentInfeasible(AssignmentError):
    def __init__(self, giver: Participant):
        self.giver = giver
        super().__init__(
            f"Unable to find a valid receiver for {giver.label}. "
            "There may be too few participants for the requested number of gifts per person."
        )

class SelfAssignmentDetected(AssignmentError):
    def __init__(self, assignment: Assignment):
        self.assignment = assignment
        super().__init__(
            f"Invalid assignment: participant {assignment.giver_id} was assigned to themselves "
            f"(gift {assignment.gift_number})"
        )

# ============================================================
# Generator
# ============================================================
def check_feasible(participants: int, gifts_per_participant: int) -> None:
    if participants < MIN_PARTICIPANTS or participants < gifts_per_participant + 1:
        raise InsufficientParticipants(participants, gifts_per_participant)

def generate(
    participants: List[Participant],
    gifts_per_participant: int,
    rng: Optional[random.Random] = None,
) -> List[Assignment]:
    """Assign every participant ``gifts_per_participant`` distinct receivers.

    Receivers are picked greedily: lowest receive count first, then people who
    still have to give, then random. Laying off each giver's gifts this way
    (Kleitman–Wang) keeps the remaining give/receive counts realizable, so the
    result is exactly balanced whenever there are at least k + 1 people.
    """
    k = gifts_per_participant
    if k < 1:
        raise ValueError("gifts_per_participant must be >= 1")
    ids = [p.id for p in participants]
    if len(set(ids)) != len(ids):
        raise ValueError("Participant ids must be unique")
    check_feasible(len(participants), k)

    rng = rng or random.Random()
    received: Dict[str, int] = {pid: 0 for pid in ids}
    given_to: Dict[str, Set[str]] = {pid: set() for pid in ids}
    pending: Set[str] = set(ids)  # ещё не дарили
    result: List[Assignment] = []

    for giver in participants:
        pending.discard(giver.id)
        for gift_number in range(1, k + 1):
            candidates = [pid for pid in ids if pid != giver.id and pid not in given_to[giver.id]]
            if not candidates:
                raise AssignmentInfeasible(giver)
            rng.shuffle(candidates)
            receiver = min(candidates, key=lambda pid: (received[pid], pid not in pending))
            result.append(Assignment(giver.id, receiver, gift_number))
            received[receiver] += 1
            given_to[giver.id].add(receiver)

    for a in result:
        if a.giver_id == a.receiver_id:
            logger.error("Self-assignment produced by generator: %s", a)
            raise SelfAssignmentDetected(a)

    counts = received.values()
    if max(counts) - min(counts) > 1 or any(c != k for c in counts):
        logger.warning(
            "Unbalanced draw: receive counts range %d..%d, expected %d each",
            min(counts), max(counts), k,
        )

    logger.info("Generated %d assignments for %d participants (%d each)", len(result), len(participants), k)
    return result

# ============================================================
# Verifier
# ============================================================
@dataclass
class AssignmentDetail:
    receiver: str
    gift_number: int

    def to_dict(self) -> dict:
        return {"receiver": self.receiver, "giftNumber": self.gift_number}

@dataclass
class SelfAssignment:
    person: str
    gift_number: int

    def to_dict(self) -> dict:
        return {"person": self.person, "giftNumber": self.gift_number}

@dataclass
class ParticipantReport:
    id: str
    name: str
    email: Optional[str]
    gives: int
    receives: int
    expected_gives: int
    expected_receives: int
    assignments: List[AssignmentDetail] = field(default_factory=list)

    @property
    def gives_correct(self) -> bool:
        return self.gives == self.expected_gives

    @property
    def receives_correct(self) -> bool:
        return self.receives == self.expected_receives

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "email": self.email,
            "gives": self.gives,
            "receives": self.receives,
            "expectedGives": self.expected_gives,
            "expectedReceives": self.expected_receives,
            "givesCorrect": self.gives_correct,
            "receivesCorrect": self.receives_correct,
            "assignments": [d.to_dict() for d in self.assignments],
        }

@dataclass
class VerificationReport:
    group_name: str
    gifts_per_participant: int
    total_assignments: int
    participants: List[ParticipantReport]
    self_assignments: List[SelfAssignment]

    @property
    def total_participants(self) -> int:
        return len(self.participants)

    @property
    def expected_assignments(self) -> int:
        return self.total_participants * self.gifts_per_participant

    @property
    def all_gives_correct(self) -> bool:
        return all(p.gives_correct for p in self.participants)

    @property
    def all_receives_correct(self) -> bool:
        return all(p.receives_correct for p in self.participants)

    @property
    def has_self_assignments(self) -> bool:
        return len(self.self_assignments) > 0

    @property
    def is_valid(self) -> bool:
        return (
            self.all_gives_correct
            and self.all_receives_correct
            and not self.has_self_assignments
            and self.total_assignments == self.expected_assignments
        )

    @property
    def issues(self) -> List[str]:
        k = self.gifts_per_participant
        out: List[str] = []
        for p in self.participants:
            if not p.gives_correct:
                out.append(f"{p.name} gives {p.gives} instead of {k}")
            if not p.receives_correct:
                out.append(f"{p.name} receives {p.receives} instead of {k}")
        if self.has_self_assignments:
            out.append(f"{len(self.self_assignments)} self-assignment(s) found")
        if self.total_assignments != self.expected_assignments:
            out.append(f"{self.total_assignments} assignments instead of {self.expected_assignments}")
        return out

    @property
    def summary(self) -> Dict[str, str]:
        if self.is_valid:
            return {
                "status": "success",
                "message": "All assignments are correct! Everyone gives and receives the correct "
                           "number of gifts, and there are no self-assignments.",
            }
        return {"status": "error", "message": "Issues found. Please review the participant details below."}

    def to_dict(self) -> dict:
        return {
            "groupName": self.group_name,
            "giftsPerParticipant": self.gifts_per_participant,
            "totalParticipants": self.total_participants,
            "totalAssignments": self.total_assignments,
            "expectedAssignments": self.expected_assignments,
            "isValid": self.is_valid,
            "hasSelfAssignments": self.has_self_assignments,
            "selfAssignments": [s.to_dict() for s in self.self_assignments],
            "allGivesCorrect": self.all_gives_correct,
            "allReceivesCorrect": self.all_receives_correct,
            "participants": [p.to_dict() for p in self.participants],
            "summary": self.summary,
        }

def verify(
    participants: List[Participant],
    assignments: Iterable[Assignment],
    gifts_per_participant: int,
    group_name: str = "",
) -> VerificationReport:
    if participants is None or assignments is None:
        raise TypeError("participants and assignments are required")

    names = {p.id: p.label for p in participants}
    gives: Dict[str, int] = {p.id: 0 for p in participants}
    receives: Dict[str, int] = {p.id: 0 for p in participants}
    details: Dict[str, List[AssignmentDetail]] = {p.id: [] for p in participants}
    self_assignments: List[SelfAssignment] = []

    total = 0
    for a in assignments:
        total += 1
        if a.giver_id == a.receiver_id:
            self_assignments.append(SelfAssignment(names.get(a.giver_id, a.giver_id), a.gift_number))
        # чужие id считаются в итогах, но строки участника не получают
        gives[a.giver_id] = gives.get(a.giver_id, 0) + 1
        receives[a.receiver_id] = receives.get(a.receiver_id, 0) + 1
        if a.giver_id in details:
            details[a.giver_id].append(AssignmentDetail(names.get(a.receiver_id, a.receiver_id), a.gift_number))

    reports = [
        ParticipantReport(
            id=p.id,
            name=p.label,
            email=p.email,
            gives=gives[p.id],
            receives=receives[p.id],
            expected_gives=gifts_per_participant,
            expected_receives=gifts_per_participant,
            assignments=sorted(details[p.id], key=lambda d: d.gift_number),
        )
        for p in participants
    ]
    return VerificationReport(
        group_name=group_name,
        gifts_per_participant=gifts_per_participant,
        total_assignments=total,
        participants=reports,
        self_assignments=self_assignments,
    )
