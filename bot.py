import asyncio
import os
import discord
from discord.ext import commands

import dashboard
import raid_engine
import raid_store

# ----------------------------
# Intents
# ----------------------------
intents = discord.Intents.default()
intents.message_content = True

bot = commands.Bot(command_prefix="!", intents=intents, help_command=None)

# ----------------------------
# Config
# ----------------------------
RAID_TEAMS_IN_EMBED = 15  # top teams listed by !raid

_dashboard_runner = None

# ----------------------------
# Embeds
# ----------------------------
def build_raid_embed(raid, team_list):
    """Raid summary: teams, check-ins and the current top places."""
    finished = [t for t in team_list
                if (t.get("result") or {}).get("status") == raid_engine.STATUS_FINISHED]
    embed = discord.Embed(
        title=f"🏁 {raid.get('name') or 'Raid ' + str(raid['raid_id'])}",
        description=(
            f"**Teams:** {len(team_list)}\n"
            f"**Check-ins:** {len(raid.get('chips', []))}\n"
            f"**Finished:** {len(finished)}"
        ),
        color=0x2f9e44,
    )
    placed = sorted((t for t in finished if t["result"].get("place")),
                    key=lambda t: t["result"]["place"])
    if placed:
        lines = []
        for t in placed[:RAID_TEAMS_IN_EMBED]:
            res = t["result"]
            lines.append(f"{res['place']}. #{t['number']} {t.get('name', '')} "
                         f"— {raid_engine.format_duration(res['total'])}")
        embed.add_field(name="Standings", value="\n".join(lines), inline=False)
    embed.set_footer(text=f"Finish closes {raid_engine.format_time(raid.get('time_finish'))}")
    return embed

def build_help_embed():
    embed = discord.Embed(
        title="📖  Raid Bot — Help Menu",
        description="Link your participant account to receive raid broadcasts.",
        color=0x2ecc71,
    )
    embed.add_field(name="🔗  !link <user_id>", value="Link your Discord account to your participant id.", inline=False)
    embed.add_field(name="🔔  !notify on|off", value="Turn regular broadcasts on or off. Urgent ones always arrive.", inline=False)
    embed.add_field(name="🏁  !raid <raid_id>", value="Show raid teams and current standings.", inline=False)
    return embed

# ----------------------------
# Commands
# ----------------------------
@bot.command(help="Link your Discord account to a participant. Usage: !link <user_id>")
async def link(ctx, user_id: int):
    p = raid_store.link_discord(user_id, ctx.author.id)
    if p is None:
        await ctx.send(f"❌ Participant {user_id} not found.", delete_after=10)
        return
    await ctx.send(f"✅ Linked to participant **{p.get('name') or user_id}**. Broadcasts are on.")
    await dashboard.push_log(f"🔗 {ctx.author} linked to participant {user_id}")

@bot.command(help="Turn regular broadcasts on or off. Usage: !notify on|off")
async def notify(ctx, mode: str):
    mode = mode.lower()
    if mode not in ("on", "off"):
        await ctx.send("Usage: `!notify on` or `!notify off`", delete_after=10)
        return
    p = raid_store.set_notify(ctx.author.id, mode == "on")
    if p is None:
        await ctx.send("❌ Your account is not linked. Use `!link <user_id>` first.", delete_after=10)
        return
    await ctx.send(f"🔔 Regular broadcasts are **{mode}**.")

@bot.command(help="Show raid standings. Usage: !raid <raid_id>")
async def raid(ctx, raid_id: int):
    r = raid_store.get_raid(raid_id)
    if r is None:
        await ctx.send(f"❌ Raid {raid_id} not found.", delete_after=10)
        return
    await ctx.send(embed=build_raid_embed(r, raid_store.raid_teams(raid_id)))

@bot.command(help="Show this help menu.")
async def help(ctx):
    await ctx.send(embed=build_help_embed())

@bot.event
async def on_command_error(ctx, error):
    if isinstance(error, (commands.MissingRequiredArgument, commands.BadArgument)):
        await ctx.send(f"❌ {error}", delete_after=10)
        return
    if isinstance(error, commands.CommandNotFound):
        return
    print(f"❌ Command error in {ctx.command}: {error}")

# ----------------------------
# Bot ready
# ----------------------------
@bot.event
async def on_ready():
    global _dashboard_runner
    print(f"Logged in as {bot.user}")

    raid_store.load_store()

    # on_ready fires again after reconnects
    if _dashboard_runner is None:
        _dashboard_runner = await dashboard.start_dashboard(bot)

    print("✅ Bot is ready!")
    print(f"   Raids: {len(raid_store.raids)}")
    print(f"   Participants: {len(raid_store.participants)}")

# ----------------------------
# Run Bot
# ----------------------------
async def main():
    token = os.environ.get("DISCORD_BOT_TOKEN")
    if not token:
        print("❌ DISCORD_BOT_TOKEN environment variable not set!")
        print("Set it with: export DISCORD_BOT_TOKEN='your_token_here'")
        return

    async with bot:
        await bot.start(token)

if __name__ == "__main__":
    asyncio.run(main())
