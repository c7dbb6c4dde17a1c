__red_end_user_data_statement__ = "This cog does not persistently store any end user data."


async def setup(bot):
    from .invitelog import InviteLog

    cog = InviteLog(bot)
    await bot.add_cog(cog)
