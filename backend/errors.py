# Error taxonomy shared by the eligibility and tally code.
# The route layer maps these onto HTTP responses.


class BallotError(Exception):
    pass


class EmptyWhitelist(BallotError):
    pass


class LeafNotFound(BallotError):
    pass


class InvalidProof(BallotError):
    pass


class DecryptionFailed(BallotError):
    pass


class EntropyFailure(BallotError):
    pass


class AmbiguousCandidate(BallotError):
    def __init__(self, candidate):
        super().__init__(f"ballot names unknown candidate: {candidate!r}")
        self.candidate = candidate


class DuplicateBallot(BallotError):
    def __init__(self, voters):
        super().__init__(f"more than one ballot for voter(s): {', '.join(voters)}")
        self.voters = list(voters)
