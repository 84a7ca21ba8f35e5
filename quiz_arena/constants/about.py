"""Static metadata describing QuizArena."""

APP_NAME = "QuizArena"
APP_VERSION = "0.1"
APP_LICENSE = "MIT License"
APP_ABOUT_TEXT = (
    "QuizArena runs online tests in practice or exam mode, grades answers "
    "automatically where possible, and hosts live team quiz battles on top of "
    "the same tests."
)
