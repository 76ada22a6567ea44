"""MCP Resources implementation.

Serves a fixed text document: the WrapShip project documentation, shipped
as package data.
"""

from importlib import resources as importlib_resources
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict


GREETING_RESOURCE_URI = "https://wrapship.pro"


def load_document(filename: str) -> str:
    """Read a text document bundled in ``stateless_mcp/data``."""
    return (
        importlib_resources.files("stateless_mcp")
        .joinpath("data", filename)
        .read_text(encoding="utf-8")
    )


class MCPResource(BaseModel):
    """Base resource model for MCP responses."""
    model_config = ConfigDict(extra='forbid')

    uri: str
    name: str
    mime_type: str = "text/plain"
    text: str = ""
    description: Optional[str] = None

    def to_listing(self) -> Dict[str, Any]:
        """Entry for resources/list."""
        listing = {
            "uri": self.uri,
            "name": self.name,
            "mimeType": self.mime_type,
        }
        if self.description:
            listing["description"] = self.description
        return listing

    def to_response(self) -> Dict[str, Any]:
        """Convert to MCP resources/read response format."""
        return {
            "contents": [
                {
                    "uri": self.uri,
                    "mimeType": self.mime_type,
                    "text": self.text,
                }
            ]
        }


class MCPResourceProvider:
    """Provider for the server's static resources."""

    def __init__(self):
        self._resources: Dict[str, MCPResource] = {}
        self.register(MCPResource(
            uri=GREETING_RESOURCE_URI,
            name="greeting-resource",
            mime_type="text/plain",
            text=load_document("greeting_resource.md")
        ))

    def register(self, resource: MCPResource) -> None:
        self._resources[resource.uri] = resource

    def list_resources(self) -> List[Dict[str, Any]]:
        return [r.to_listing() for r in self._resources.values()]

    def resolve(self, uri: str) -> Optional[MCPResource]:
        """Resolve a URI to a resource, or None if unknown."""
        return self._resources.get(uri)
