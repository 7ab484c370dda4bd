"""
Decrypt-and-count for a closed election.

tally() is a pure function of (ballots, private key, candidates): no database,
no clock except the closed_at stamp. A ballot that cannot be decrypted, or that
names a candidate outside the declared list, is excluded and reported; it never
aborts the run. Ordering is fully deterministic: counts descending, ties kept in
declared candidate order.
"""

import datetime
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from ballot_codec import EncryptedBallot, decrypt
from errors import AmbiguousCandidate, DecryptionFailed, DuplicateBallot

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Ballot:
    voter_address: str
    encrypted: Union[EncryptedBallot, dict]
    submitted_at: Optional[datetime.datetime] = None
    merkle_proof: Optional[List[str]] = None
    election_id: Optional[str] = None


@dataclass
class CandidateResult:
    candidate: str
    votes: int
    percentage: float


@dataclass
class TallyResult:
    election_id: Optional[str]
    total_valid: int
    results: List[CandidateResult]
    winners: List[str]
    closed_at: datetime.datetime
    audit_log: List[Dict[str, Any]] = field(default_factory=list)
    excluded: List[Dict[str, str]] = field(default_factory=list)

    @property
    def excluded_count(self) -> int:
        return len(self.excluded)

    def counts(self) -> Dict[str, int]:
        return {r.candidate: r.votes for r in self.results}

    def public_view(self) -> dict:
        # no audit log here: who voted for whom stays with the authority
        return {
            "election_id": self.election_id,
            "total_votes": self.total_valid,
            "candidates": [
                {"candidate": r.candidate, "votes": r.votes, "percentage": r.percentage}
                for r in self.results
            ],
            "winners": list(self.winners),
            "excluded_count": self.excluded_count,
            "closed_at": _iso(self.closed_at),
        }

    def to_document(self) -> dict:
        doc = self.public_view()
        doc["closed_at"] = self.closed_at
        doc["decrypted_votes"] = [dict(entry) for entry in self.audit_log]
        doc["excluded"] = list(self.excluded)
        return doc


def _iso(ts):
    return ts.isoformat() if isinstance(ts, datetime.datetime) else ts


def candidate_names(candidates) -> List[str]:
    names = []
    for c in candidates:
        names.append(c["name"] if isinstance(c, dict) else str(c))
    if len(set(names)) != len(names):
        raise ValueError("candidate names must be unique within an election")
    return names


def find_duplicate_voters(ballots: Sequence[Ballot]) -> List[str]:
    seen = set()
    dups = []
    for b in ballots:
        if b.voter_address in seen and b.voter_address not in dups:
            dups.append(b.voter_address)
        seen.add(b.voter_address)
    return dups


def selected_candidate(payload: dict, known) -> str:
    selection = payload.get("candidate")
    if not isinstance(selection, str) or selection not in known:
        raise AmbiguousCandidate(selection)
    return selection


def _open_ballot(ballot: Ballot, private_key: bytes, known: set):
    """Returns (selection, None) for a countable ballot or (None, reason)."""
    try:
        encrypted = ballot.encrypted
        if not isinstance(encrypted, EncryptedBallot):
            # stored form: base64 text fields
            encrypted = EncryptedBallot.from_dict(encrypted)
        payload = decrypt(encrypted, private_key)
        return selected_candidate(payload, known), None
    except DecryptionFailed as e:
        return None, f"decryption_failed: {e}"
    except AmbiguousCandidate as e:
        return None, f"ambiguous_candidate: {e.candidate!r}"


def tally(ballots: Sequence[Ballot], private_key: bytes, candidates, election_id=None, workers: int = 1,
          closed_at: Optional[datetime.datetime] = None) -> TallyResult:
    names = candidate_names(candidates)
    dups = find_duplicate_voters(ballots)
    if dups:
        raise DuplicateBallot(dups)

    known = set(names)
    if workers and workers > 1 and len(ballots) > 1:
        # map() keeps input order, so the audit log order is unaffected
        with ThreadPoolExecutor(max_workers=workers) as pool:
            opened = list(pool.map(lambda b: _open_ballot(b, private_key, known), ballots))
    else:
        opened = [_open_ballot(b, private_key, known) for b in ballots]

    counts = dict.fromkeys(names, 0)
    audit_log = []
    excluded = []
    for ballot, (selection, reason) in zip(ballots, opened):
        if reason is not None:
            log.warning("excluding ballot from %s in election %s: %s", ballot.voter_address, election_id, reason)
            excluded.append({"voter_address": ballot.voter_address, "reason": reason})
            continue
        counts[selection] += 1
        audit_log.append({
            "voter_address": ballot.voter_address,
            "candidate": selection,
            "submitted_at": ballot.submitted_at,
        })

    total_valid = sum(counts.values())
    results = [
        CandidateResult(
            candidate=name,
            votes=counts[name],
            percentage=0.0 if total_valid == 0 else 100 * counts[name] / total_valid,
        )
        for name in names
    ]
    # sorted() is stable: equal counts keep declared order
    results = sorted(results, key=lambda r: r.votes, reverse=True)

    winners = []
    if total_valid > 0:
        top = results[0].votes
        winners = [r.candidate for r in results if r.votes == top]

    log.info("tallied election %s: %d valid, %d excluded", election_id, total_valid, len(excluded))
    return TallyResult(
        election_id=election_id,
        total_valid=total_valid,
        results=results,
        winners=winners,
        closed_at=closed_at or datetime.datetime.now(datetime.timezone.utc),
        audit_log=audit_log,
        excluded=excluded,
    )
