from pathlib import Path

# Project root (the directory holding the enhpix package)
BASE_PATH = Path(__file__).resolve().parent.parent.parent
