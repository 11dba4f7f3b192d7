import re

from companion.domain.models.conversation import PersonaTone

AGE_PATTERN = re.compile(r"age is (\d+)", re.IGNORECASE)

CHILD_AGE_LIMIT = 13
ELDER_AGE_LIMIT = 60


class PersonaDeriver:
    """Selects a tone from the age marker in the user's facts"""

    def __init__(self, child_below: int = CHILD_AGE_LIMIT, elder_above: int = ELDER_AGE_LIMIT):
        self.child_below = child_below
        self.elder_above = elder_above

    def derive(self, user_facts: str) -> PersonaTone:
        match = AGE_PATTERN.search(user_facts or "")
        if not match:
            return PersonaTone.GENTLE

        age = int(match.group(1))
        if age < self.child_below:
            return PersonaTone.CHILD
        if age > self.elder_above:
            return PersonaTone.ELDER
        return PersonaTone.GENTLE
