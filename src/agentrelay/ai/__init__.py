"""Model client, generation loop, tools and agents."""

from .client import ClientSettings, OpenAIChatModel

__all__ = ["ClientSettings", "OpenAIChatModel"]
