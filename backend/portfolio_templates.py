"""Static portfolio template catalog served by the HTTP facade."""

from typing import Any, Dict, List, Optional

TEMPLATES: Dict[str, Dict[str, Any]] = {
    "minimalist": {
        "id": "minimalist",
        "name": "Minimalist",
        "description": "Clean, pared-back layout with generous whitespace",
        "canvasSize": {"width": 1440, "height": 3200},
        "sections": ["about", "projects", "skills", "contact"],
    },
    "project-showcase": {
        "id": "project-showcase",
        "name": "Project Showcase",
        "description": "Project-first layout with large case-study cards",
        "canvasSize": {"width": 1440, "height": 4000},
        "sections": ["about", "projects", "experience", "contact"],
    },
    "creative": {
        "id": "creative",
        "name": "Creative",
        "description": "Expressive layout with bold type and color blocks",
        "canvasSize": {"width": 1920, "height": 3600},
        "sections": ["about", "projects", "skills", "education", "contact"],
    },
}


def get_template_by_id(template_id: str) -> Optional[Dict[str, Any]]:
    return TEMPLATES.get(template_id)


def get_template_list() -> List[Dict[str, str]]:
    """Return the {id, name, description} summary of every template."""
    return [
        {"id": t["id"], "name": t["name"], "description": t["description"]}
        for t in TEMPLATES.values()
    ]
