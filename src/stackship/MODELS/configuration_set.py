"""
Models for resolved runtime configuration.
"""
from typing import Dict, List, Optional
from pydantic import BaseModel


class ConfigurationSource(BaseModel):
    """
    One layer of configuration. Sources are kept lowest precedence first.
    """
    name: str
    values: Dict[str, str] = {}
    path: Optional[str] = None


class ConfigurationSet(BaseModel):
    """
    The merged view of all configuration sources, with the source each key came from.
    """
    sources: List[ConfigurationSource] = []
    values: Dict[str, str] = {}
    provenance: Dict[str, str] = {}

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.values.get(key, default)

    def source_of(self, key: str) -> Optional[str]:
        return self.provenance.get(key)

    def as_env(self) -> Dict[str, str]:
        return dict(self.values)

    def masked(self, secret_keys: List[str]) -> Dict[str, str]:
        """Values with secret keys replaced, for display."""
        return {k: ("******" if k in secret_keys and v else v) for k, v in self.values.items()}
