from __future__ import annotations

from typing import Optional

import discord
from discord import app_commands
from discord.ext import commands

from cobot.errors import UnknownModelError
from cobot.llm.model_catalog import MODELS, find_model
from cobot.logger_factory import get_logger
from cobot.utils.logfmt import fmt

log = get_logger("Cog.Model")

MODEL_CHOICES = [app_commands.Choice(name=f"{m.label} ({m.id})", value=m.id) for m in MODELS]


def describe_catalog(active: str) -> str:
    lines = []
    for m in MODELS:
        marker = "**>**" if m.id == active else "-"
        lines.append(f"{marker} {m.label} (`{m.id}`): {m.description}")
    return "\n".join(lines)


class ModelCog(commands.Cog):
    def __init__(self, bot: commands.Bot):
        self.bot = bot

    @property
    def llm(self):
        return getattr(self.bot, "llm", None)

    @app_commands.command(name="model", description="View or change the AI model Co-Bot uses")
    @app_commands.describe(model="Model to switch to")
    @app_commands.choices(model=MODEL_CHOICES)
    async def model(self, interaction: discord.Interaction, model: Optional[app_commands.Choice[str]] = None):
        llm = self.llm
        if llm is None:
            await interaction.response.send_message("Completion service unavailable.", ephemeral=True)
            return
        if model is None:
            current = find_model(llm.model)
            label = current.label if current else llm.model
            await interaction.response.send_message(
                f"Current model: **{label}** (`{llm.model}`)\n{describe_catalog(llm.model)}", ephemeral=True
            )
            return

        await interaction.response.defer()
        uname = getattr(interaction.user, "name", "user")
        try:
            info = await llm.set_model(model.value)
        except UnknownModelError as e:
            log.warning(f"[model-switch-rejected] {fmt('model', model.value)} {fmt('user', uname)}")
            await interaction.followup.send(f"Failed to switch model: {e}")
            return
        except Exception as e:
            log.error(f"Model switch failed: {e}")
            await interaction.followup.send(f"Failed to switch model: {e}")
            return
        log.info(f"[model-switch] {fmt('model', info.id)} {fmt('user', uname)}")
        await interaction.followup.send(f"Model switched to **{info.label}** (`{info.id}`)\n> {info.description}")


async def setup(bot: commands.Bot):
    await bot.add_cog(ModelCog(bot))
