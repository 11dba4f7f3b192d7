import re
from typing import Dict, List, Union

# Rendering hints for the speech synthesizer; synthesis itself happens client-side
VOICE_SETTINGS: Dict[str, Union[float, List[str]]] = {
    "rate": 0.82,
    "pitch": 0.55,
    "preferred_voices": ["Google US English", "Microsoft Mark", "Male"],
}


def to_speakable(text: str) -> str:
    """Flatten intonation: no rising pitch on questions or exclamations"""

    flat = re.sub(r"[?!]", ".", text or "")
    return re.sub(r",(?! )", ", ", flat)
