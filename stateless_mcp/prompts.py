"""MCP Prompts implementation.

Prompt templates the client can fetch and fill in.
"""

from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field


class GreetingTemplateArgs(BaseModel):
    """Arguments for greeting-template prompt."""

    model_config = ConfigDict(extra='forbid')

    name: str = Field(description="Name to include in greeting")


class PromptMessage(BaseModel):
    """One message of a rendered prompt."""

    role: str = "user"
    text: str

    def to_response(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "content": {"type": "text", "text": self.text}
        }


class MCPPromptProvider:
    """Provider for MCP prompts."""

    PROMPTS = {
        "greeting-template": {
            "description": "A simple greeting prompt template",
            "args_model": GreetingTemplateArgs,
            "method": "greeting_template",
        },
    }

    def list_prompts(self) -> List[Dict[str, Any]]:
        """Prompt definitions for prompts/list."""
        prompts = []
        for name, entry in self.PROMPTS.items():
            schema = entry["args_model"].model_json_schema()
            required = set(schema.get("required", []))
            prompts.append({
                "name": name,
                "description": entry["description"],
                "arguments": [
                    {
                        "name": arg_name,
                        "description": prop.get("description", ""),
                        "required": arg_name in required
                    }
                    for arg_name, prop in schema.get("properties", {}).items()
                ]
            })
        return prompts

    def greeting_template(self, args: GreetingTemplateArgs) -> List[PromptMessage]:
        return [PromptMessage(text=f"Please greet {args.name} in a friendly manner.")]

    def get(self, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        """Render a prompt.

        Raises:
            KeyError: If no prompt has this name
            pydantic.ValidationError: If arguments do not match the prompt
        """
        entry = self.PROMPTS[name]
        args = entry["args_model"].model_validate(arguments)
        messages = getattr(self, entry["method"])(args)
        return {
            "description": entry["description"],
            "messages": [m.to_response() for m in messages]
        }
