import secrets
import string
from collections.abc import Callable

from imagehost.errors import ShortCodeExhausted

SHORT_CODE_ALPHABET = string.ascii_uppercase + string.ascii_lowercase + string.digits


class ShortCodeIssuer:
    """Draws random alphanumeric codes until ``exists`` reports one as free.

    Repeated collisions at one length widen the code by a character, so a filling
    namespace costs a longer code instead of an unbounded loop.
    """

    def __init__(
        self,
        exists: Callable[[str], bool],
        length: int = 6,
        attempts_per_length: int = 5,
        max_length: int = 16,
    ) -> None:
        if length <= 0 or max_length < length:
            raise ValueError("short code length must be positive and not exceed max_length")
        self.exists = exists
        self.length = length
        self.attempts_per_length = max(1, attempts_per_length)
        self.max_length = max_length

    def draw(self, length: int) -> str:
        return "".join(secrets.choice(SHORT_CODE_ALPHABET) for _ in range(length))

    def issue(self, length: int | None = None) -> str:
        current = length or self.length
        while current <= self.max_length:
            for _ in range(self.attempts_per_length):
                code = self.draw(current)
                if not self.exists(code):
                    return code
            current += 1
        raise ShortCodeExhausted("could not find a free short code")
