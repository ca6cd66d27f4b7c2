"""Speaking Drill: timed spoken-answer practice with phonetic / lexical / timing scoring."""

__version__ = "1.0.0"
