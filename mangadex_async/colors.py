import os
import sys


class Colors:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"
    GREEN = "\033[92m"
    BLUE = "\033[94m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    CYAN = "\033[96m"
    MAG = "\033[95m"

    # honours https://no-color.org and plain pipes
    enabled = "NO_COLOR" not in os.environ and sys.stdout.isatty()

    @classmethod
    def paint(cls, text: str, *codes: str) -> str:
        if not cls.enabled:
            return text
        return "".join(codes) + text + cls.RESET

    @classmethod
    def success(cls, msg: str) -> str:
        return f"{cls.paint('Success:', cls.GREEN)} {msg}"

    @classmethod
    def info(cls, msg: str) -> str:
        return f"{cls.paint('Info:', cls.CYAN)} {msg}"

    @classmethod
    def error(cls, msg: str) -> str:
        return f"{cls.paint('Error:', cls.RED)} {msg}"

    @classmethod
    def warning(cls, msg: str) -> str:
        return f"{cls.paint('Warning:', cls.YELLOW)} {msg}"

    @classmethod
    def chapter(cls, label: str) -> str:
        """Chapter label, e.g. ``Vol. 2 Ch. 14``."""
        return cls.paint(label, cls.BOLD, cls.MAG)

    @classmethod
    def title(cls, text: str) -> str:
        return cls.paint(text, cls.BOLD, cls.BLUE)

    @classmethod
    def muted(cls, text: str) -> str:
        return cls.paint(text, cls.DIM)
