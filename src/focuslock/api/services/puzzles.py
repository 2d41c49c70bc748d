"""Puzzle bank for unlocking alerts and for the disable protocol."""

import random
from collections.abc import Callable

from focuslock.model.models import Challenge
from focuslock.watchers.logger import get_logger

logger = get_logger("puzzles")

PUZZLE_TYPES = ("math", "history", "chemistry", "coding", "trivia")
DROWSINESS_CHALLENGE_TYPES = ("phrase", "math", "trivia")
WRONG_ANSWER_MESSAGE = "Wrong! Try again."

QUESTION_BANK: dict[str, tuple[tuple[str, str], ...]] = {
    "history": (
        ("What year did World War 2 end?", "1945"),
        ("What year did the USA declare independence?", "1776"),
        ("What year did World War 1 start?", "1914"),
        ("What year did the Berlin Wall fall?", "1989"),
        ("What year was the first iPhone released?", "2007"),
        ("What year did man first land on the moon?", "1969"),
        ("What year did the Titanic sink?", "1912"),
        ("What year was the Magna Carta signed?", "1215"),
        ("What year did the French Revolution begin?", "1789"),
        ("Who was the first President of the United States?", "washington"),
        ("Who painted the Mona Lisa?", "da vinci"),
        ("Who was the first person in space?", "gagarin"),
        ("Who wrote Romeo and Juliet?", "shakespeare"),
        ("Who invented the telephone?", "bell"),
    ),
    "chemistry": (
        ("What is the chemical symbol for Gold?", "au"),
        ("What is the chemical symbol for Iron?", "fe"),
        ("What is the chemical symbol for Silver?", "ag"),
        ("What is the chemical symbol for Sodium?", "na"),
        ("What is the chemical symbol for Potassium?", "k"),
        ("What is the chemical symbol for Lead?", "pb"),
        ("What is the chemical symbol for Mercury?", "hg"),
        ("What is the chemical symbol for Copper?", "cu"),
        ("What is H2O commonly known as?", "water"),
        ("What is NaCl commonly known as?", "salt"),
        ("What is the atomic number of Carbon?", "6"),
        ("What is the pH of pure water?", "7"),
        ("What gas do plants produce during photosynthesis?", "oxygen"),
        ("What is the most abundant gas in Earth's atmosphere?", "nitrogen"),
    ),
    "coding": (
        ("What HTTP status code means 'Not Found'?", "404"),
        ("What HTTP status code means 'OK'?", "200"),
        ("What HTTP status code means 'Forbidden'?", "403"),
        ("What data structure uses LIFO (Last In First Out)?", "stack"),
        ("What data structure uses FIFO (First In First Out)?", "queue"),
        ("How many bits in a byte?", "8"),
        ("What is 2 to the power of 8?", "256"),
        ("What keyword is used to define a function in Python?", "def"),
        ("What symbol starts a comment in Python?", "#"),
        ("What Git command stages changes?", "add"),
        ("What Git command saves your changes?", "commit"),
        ("What is the extension for Python files?", ".py"),
        ("What HTTP method is used to retrieve data?", "get"),
        ("What is the opposite of synchronous?", "asynchronous"),
    ),
    "trivia": (
        ("How many days in a leap year?", "366"),
        ("How many continents are there?", "7"),
        ("What planet is known as the Red Planet?", "mars"),
        ("How many legs does a spider have?", "8"),
        ("What is the capital of France?", "paris"),
        ("What is the capital of Japan?", "tokyo"),
        ("What is the largest ocean on Earth?", "pacific"),
        ("What is the capital of Canada?", "ottawa"),
        ("What is the capital of Australia?", "canberra"),
        ("What is the largest planet in our solar system?", "jupiter"),
        ("How many degrees in a right angle?", "90"),
        ("How many bones are in the human body?", "206"),
        ("What is the fastest land animal?", "cheetah"),
        ("What is the longest river in the world?", "nile"),
    ),
}

WORD_BANK: tuple[str, ...] = (
    "focus",
    "alert",
    "energy",
    "hydrate",
    "stretch",
    "breathe",
    "wake",
    "active",
    "bright",
    "sharp",
    "drive",
    "spark",
    "tempo",
    "pivot",
    "laser",
    "glow",
    "bounce",
    "charge",
    "ignite",
    "thrive",
    "reset",
    "revive",
    "steady",
    "clarity",
    "swift",
    "fresh",
    "prime",
    "vivid",
    "rise",
    "awake",
    "mirror",
    "stride",
    "pulse",
    "anchor",
    "momentum",
)

DROWSINESS_TRIVIA: tuple[tuple[str, str], ...] = (
    ("Spell the day that follows Tuesday.", "WEDNESDAY"),
    ("Type the word 'SUNRISE' backwards.", "ESIRNUS"),
    ("What planet is known as the Red Planet?", "MARS"),
    ("What is the capital city of France?", "PARIS"),
    ("Spell the chemical symbol for water.", "H2O"),
    ("Type the first three letters of the alphabet in reverse order.", "CBA"),
    ("What animal says 'moo'?", "COW"),
    ("Spell the word 'energy' in lowercase letters.", "energy"),
)


def generate_math_puzzle(rng: random.Random) -> Challenge:
    op = rng.choice(("+", "-", "*"))
    if op == "*":
        a, b = rng.randint(2, 13), rng.randint(2, 13)
        answer = a * b
    elif op == "-":
        a, b = rng.randint(20, 49), rng.randint(1, 15)
        answer = a - b
    else:
        a, b = rng.randint(1, 50), rng.randint(1, 50)
        answer = a + b
    return Challenge("math", f"{a} {op} {b} = ?", str(answer))


def _bank_puzzle(kind: str) -> Callable[[random.Random], Challenge]:
    def generate(rng: random.Random) -> Challenge:
        question, answer = rng.choice(QUESTION_BANK[kind])
        return Challenge(kind, question, answer)

    return generate


PUZZLE_GENERATORS: dict[str, Callable[[random.Random], Challenge]] = {
    "math": generate_math_puzzle,
    "history": _bank_puzzle("history"),
    "chemistry": _bank_puzzle("chemistry"),
    "coding": _bank_puzzle("coding"),
    "trivia": _bank_puzzle("trivia"),
}


def generate_puzzle(rng: random.Random | None = None) -> Challenge:
    """ランダムな種類の問題を1問生成する."""
    rng = rng or random.Random()
    return PUZZLE_GENERATORS[rng.choice(PUZZLE_TYPES)](rng)


# ----------------------------------------------------------------------
# 眠気アラーム解除用チャレンジ


def generate_alarm_phrase(rng: random.Random) -> str:
    """重複なしの4単語 + 3桁の数字 (例: FOCUS-SPARK-RISE-GLOW-482)."""
    words = [w.upper() for w in rng.sample(WORD_BANK, 4)]
    return f"{'-'.join(words)}-{rng.randint(100, 999)}"


def create_drowsiness_challenge(
    rng: random.Random | None = None,
    choices: tuple[str, ...] = DROWSINESS_CHALLENGE_TYPES,
) -> Challenge:
    """眠気アラーム用のチャレンジを生成する. sleeping では math/trivia のみ."""
    rng = rng or random.Random()
    kind = rng.choice(choices)
    if kind == "math":
        a, b, c = rng.randint(10, 99), rng.randint(10, 99), rng.randint(1, 9)
        return Challenge("math", f"Solve: {a} + {b} - {c} = ?", str(a + b - c))
    if kind == "trivia":
        prompt, answer = rng.choice(DROWSINESS_TRIVIA)
        return Challenge("trivia", prompt, answer)
    phrase = generate_alarm_phrase(rng)
    return Challenge("phrase", f"Type this phrase exactly: {phrase}", phrase)


class DisableChallenge:
    """無効化プロトコル: 規定数の問題を連続で解く必要がある.

    不正解のときは同じ問題のまま。再有効化は無条件なのでここでは扱わない。
    """

    def __init__(
        self,
        required: int = 10,
        rng: random.Random | None = None,
    ) -> None:
        self.required = required
        self._rng = rng or random.Random()
        self.solved = 0
        self.current: Challenge | None = None
        self.error: str | None = None

    @property
    def active(self) -> bool:
        return self.current is not None

    @property
    def remaining(self) -> int:
        return self.required - self.solved

    def start(self) -> Challenge:
        self.solved = 0
        self.error = None
        self.current = generate_puzzle(self._rng)
        logger.info("disable challenge started (%d puzzles)", self.required)
        return self.current

    @property
    def completed(self) -> bool:
        return self.solved >= self.required

    def submit(self, answer: str) -> bool:
        """回答を確認し、正解なら True. 進行中でなければ何もしない."""
        if self.current is None:
            return False
        if not self.current.check(answer):
            self.error = WRONG_ANSWER_MESSAGE
            return False

        self.error = None
        self.solved += 1
        if self.completed:
            self.current = None
            logger.info("disable challenge completed")
        else:
            self.current = generate_puzzle(self._rng)
        return True

    def cancel(self) -> None:
        self.current = None
        self.solved = 0
        self.error = None
