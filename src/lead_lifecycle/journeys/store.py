"""JSON-backed store of journey definitions."""

import json
import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .definitions import JourneyDefinition, journey_from_dict, journey_to_dict
from ..errors import ValidationError

logger = logging.getLogger(__name__)


class JourneyDefinitionStore:
    """Holds every version of every tenant's journey definitions.

    Run-time components only read from the store. Definitions are added
    through ``register`` (the authoring path), never edited in place.
    """

    def __init__(self, data_path: Optional[Path] = None):
        self.data_path = data_path or Path.home() / ".lead-lifecycle" / "journeys.json"
        self._definitions: Dict[Tuple[str, str, int], JourneyDefinition] = {}
        self._lock = threading.Lock()
        self._load_data()

    def _load_data(self):
        """Load journey definitions from storage."""
        if not self.data_path.exists():
            return
        with open(self.data_path, 'r') as f:
            data = json.load(f)
        for journey_data in data.get("journeys", []):
            try:
                journey = journey_from_dict(journey_data)
            except ValidationError as e:
                logger.error(f"Skipping invalid journey definition {journey_data.get('id')}: {e.message}")
                continue
            self._definitions[(journey.tenant_id, journey.id, journey.version)] = journey

    def _save_data(self):
        """Save journey definitions to storage."""
        self.data_path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "journeys": [
                journey_to_dict(j)
                for _, j in sorted(self._definitions.items())
            ]
        }
        with open(self.data_path, 'w') as f:
            json.dump(data, f, indent=2)

    def register(self, journey: JourneyDefinition) -> JourneyDefinition:
        """Add a new journey definition version."""
        journey.validate()
        key = (journey.tenant_id, journey.id, journey.version)
        with self._lock:
            if key in self._definitions:
                raise ValidationError(f"Journey {journey.id} version {journey.version} already exists")
            self._definitions[key] = journey
            self._save_data()
        logger.info(f"Registered journey {journey.id} v{journey.version} for tenant {journey.tenant_id}")
        return journey

    def import_file(self, path: Path) -> List[JourneyDefinition]:
        """Register every definition found in a JSON file."""
        with open(path, 'r') as f:
            data = json.load(f)
        items = data.get("journeys", []) if isinstance(data, dict) else data
        return [self.register(journey_from_dict(item)) for item in items]

    def get(self, tenant_id: str, journey_id: str, version: Optional[int] = None) -> Optional[JourneyDefinition]:
        """Get a definition version, the latest one when no version is given."""
        if version is not None:
            return self._definitions.get((tenant_id, journey_id, version))

        versions = [
            j for (t, jid, _), j in self._definitions.items()
            if t == tenant_id and jid == journey_id
        ]
        if not versions:
            return None
        return max(versions, key=lambda j: j.version)

    def require(self, tenant_id: str, journey_id: str, version: Optional[int] = None) -> JourneyDefinition:
        """Like ``get`` but raises ValidationError for an unknown journey."""
        journey = self.get(tenant_id, journey_id, version)
        if journey is None:
            raise ValidationError(f"Unknown journey: {journey_id}")
        return journey

    def list_journeys(self, tenant_id: str) -> List[JourneyDefinition]:
        """Latest version of each of a tenant's journeys."""
        latest: Dict[str, JourneyDefinition] = {}
        for (t, jid, _), journey in self._definitions.items():
            if t != tenant_id:
                continue
            if jid not in latest or journey.version > latest[jid].version:
                latest[jid] = journey
        return sorted(latest.values(), key=lambda j: j.name)
