import json
from pathlib import Path
from typing import Dict, List

# Ranked incoming aliases per canonical field. First non-empty hit wins.
FIELD_ALIASES: Dict[str, List[str]] = {
    "tier": ["tierDisplay", "tier", "Tier"],
    "wave": ["wave", "Wave"],
    "coins": ["totalCoins", "coins", "Coins", "Coins earned", "Coins Earned", "Battle Report Coins earned"],
    "cells": ["totalCells", "cells", "Cells", "Cells Earned"],
    "dice": ["totalDice", "dice", "rerollShards", "Dice", "Reroll Shards", "Reroll Shards Earned"],
    "duration": ["roundDuration", "duration", "Real Time", "Game Time"],
    "killed_by": ["killedBy", "Killed By"],
    "type": ["type", "runType", "Type"],
    "date": ["date", "runDate", "Date"],
    "time": ["time", "runTime", "Time"],
    "notes": ["notes", "note", "Notes"],
}

RUN_ID_KEYS = ["runId", "_id", "id"]

DEFAULT_FIELDS: Dict[str, str] = {
    "tier": "Unknown",
    "wave": "Unknown",
    "coins": "0",
    "cells": "0",
    "dice": "0",
    "duration": "0h0m0s",
    "killed_by": "Apathy",
    "type": "Farming",
    "notes": "",
}

# Canonical payload key for each field, as the backends store it.
CANONICAL_KEYS: Dict[str, str] = {
    "tier": "tier",
    "wave": "wave",
    "coins": "totalCoins",
    "cells": "totalCells",
    "dice": "totalDice",
    "duration": "roundDuration",
    "killed_by": "killedBy",
    "type": "type",
    "date": "date",
    "time": "time",
    "notes": "notes",
}

# Backend-facing aliases written next to the canonical keys on submission.
REMOTE_ALIASES: Dict[str, List[str]] = {
    "tier": ["Tier"],
    "wave": ["Wave"],
    "coins": ["Coins", "Coins earned", "Coins Earned", "Battle Report Coins earned"],
    "cells": ["Cells", "Cells Earned"],
    "dice": ["Dice", "Reroll Shards", "Reroll Shards Earned"],
    "killed_by": ["Killed By"],
    "type": ["Type"],
    "notes": ["Notes"],
}

FIELD_LABELS: Dict[str, str] = {
    "type": "Run Type",
    "tier": "Tier",
    "wave": "Wave",
    "duration": "Duration",
    "coins": "Coins",
    "cells": "Cells",
    "dice": "Dice",
    "killed_by": "Killed By",
    "date": "Date",
    "time": "Time",
    "notes": "Notes",
}

LANGUAGE_DECIMALS: Dict[str, str] = {
    "English": ".",
    "German": ",",
    "French": ",",
    "Spanish": ",",
    "Italian": ",",
    "Portuguese": ",",
    "Russian": ",",
}

TIMEZONES: List[str] = [
    "UTC",
    "GMT",
    "WAT",
    "CET",
    "EET",
    "MSK",
    "EAT",
    "IST",
    "CST (China)",
    "JST",
    "AEST",
    "NZST",
    "ART",
    "BRT",
    "EST",
    "CST",
    "MST",
    "PST",
    "AKST",
    "HST",
]

OCR_FIELD_LABELS: Dict[str, Dict[str, str]] = {
    "English": {
        "coins": "Coins Earned",
        "cells": "Cells Earned",
        "dice": "Reroll Shards Earned",
        "duration": "Real Time",
        "killed_by": "Killed By",
        "tier": "Tier",
        "wave": "Wave",
    },
    "German": {
        "coins": "Verdiente Münzen",
        "cells": "Verdiente Zellen",
        "dice": "Erhaltene Zufallsscherben",
        "duration": "Echtzeit",
        "killed_by": "Getötet Von",
        "tier": "Stufe",
        "wave": "Welle",
    },
    "French": {
        "coins": "Pièces Obtenues",
        "cells": "Composants Obtenus",
        "dice": "Fragments De Relance Obtenus",
        "duration": "Temps Réel",
        "killed_by": "Tué Par",
        "tier": "Difficulté",
        "wave": "Vague",
    },
    "Spanish": {
        "coins": "Monedas Ganadas",
        "cells": "Baterias Ganadas",
        "dice": "Cambiar Equirlas Conseguidas Al Azar",
        "duration": "Tiempo Real",
        "killed_by": "Muerto Por",
        "tier": "Nivel",
        "wave": "Oleada",
    },
    "Italian": {
        "coins": "Gettoni Guadagnate",
        "cells": "Cell Guadagnate",
        "dice": "Fragmenti Di Cambio Guadagnati",
        "duration": "Tempo Effettivo",
        "killed_by": "Ucciso Da",
        "tier": "Grado",
        "wave": "Ondata",
    },
    "Portuguese": {
        "coins": "Moedas Ganhas",
        "cells": "Células Ganhas",
        "dice": "Fragmentos De Variacão Obtidos",
        "duration": "Tempo Real",
        "killed_by": "Mortos Por",
        "tier": "Grau",
        "wave": "Onda",
    },
    "Russian": {
        "coins": "Заработанные Монеты",
        "cells": "Заработанные Ячейки",
        "dice": "Полученные Кубики Переката",
        "duration": "Реальное Время",
        "killed_by": "Убит",
        "tier": "Уровень",
        "wave": "Волна",
    },
}

KNOWN_ENEMIES: List[str] = [
    "Apathy",
    "Basic",
    "Fast",
    "Tank",
    "Ranged",
    "Boss",
    "Protector",
    "Scatter",
    "Vampire",
    "Ray",
    "Saboteur",
    "Commander",
    "Overcharge",
]


def ocr_labels(field: str) -> List[str]:
    """Every known translation of a field's Battle Report label."""
    labels: List[str] = []
    for table in OCR_FIELD_LABELS.values():
        label = table.get(field)
        if label and label not in labels:
            labels.append(label)
    return labels


def decimal_for_language(language: str) -> str:
    return LANGUAGE_DECIMALS.get(language, ".")


def load_killer_aliases(base_dir: Path) -> Dict[str, str]:
    path = base_dir / "killer_aliases.json"
    if not path.exists():
        return {}
    data = json.loads(path.read_text(encoding="utf-8"))
    return {key.lower(): value for key, value in data.items()}


def add_killer_alias(base_dir: Path, alias: str, canonical: str) -> None:
    path = base_dir / "killer_aliases.json"
    alias = alias.lower()
    if path.exists():
        data = json.loads(path.read_text(encoding="utf-8"))
    else:
        data = {}

    data[alias] = canonical
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")
