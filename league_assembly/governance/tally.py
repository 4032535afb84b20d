"""
Vote Tally — pure counting over a set of vote choices.

A tally is a sum, not a ranking: the order of the input never matters and
there is no tie-breaking to do.
"""

from __future__ import annotations

from collections import Counter
from typing import Iterable

from league_assembly.assembly.schema import ModVoteChoice, MotionTally, Tally, VoteChoice


def tally_votes(choices: Iterable[VoteChoice | str], eligible: int | None = None) -> Tally:
    """
    Count AYE / NAY / ABSTAIN and derive ABSENT.

    Args:
        choices: One entry per stored vote row.
        eligible: Voting population. When given, every eligible country
            without a row is counted as absent.
    """
    counts = Counter(VoteChoice(c) for c in choices)
    cast = sum(counts.values())
    return Tally(
        aye=counts[VoteChoice.AYE],
        nay=counts[VoteChoice.NAY],
        abstain=counts[VoteChoice.ABSTAIN],
        absent=max(eligible - cast, 0) if eligible is not None else 0,
        eligible=eligible,
    )


def tally_motion_votes(choices: Iterable[ModVoteChoice | str]) -> MotionTally:
    counts = Counter(ModVoteChoice(c) for c in choices)
    return MotionTally(
        approve=counts[ModVoteChoice.APPROVE],
        reject=counts[ModVoteChoice.REJECT],
        abstain=counts[ModVoteChoice.ABSTAIN],
    )
