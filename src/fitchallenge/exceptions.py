class ChallengeError(ValueError):
    """An error whose message can be shown to the user as is."""


class ChallengeLimitError(ChallengeError):
    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"You can only participate in {limit} active challenges at a time")


class NotFoundError(ChallengeError):
    pass


class ParticipationError(ChallengeError):
    pass
