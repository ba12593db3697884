"""
Example usage of the OmniChat library.

Watches a few rooms on every platform and prints each event as JSON.
"""

import asyncio
import json

import dotenv

from omnichat import ChatAggregator, OmniChatConfig, setup_logging

dotenv.load_dotenv()


async def example():
    config = OmniChatConfig.from_env()
    setup_logging(config.log_level, config.log_dir)

    async with ChatAggregator(config) as chat:
        print(f"Supported platforms: {chat.get_supported_platforms()}")

        await chat.watch("https://kick.com/chips")
        await chat.watch("https://www.twitch.tv/xqc")
        chat.connect()

        async for event in chat.listen():
            print(json.dumps(event.to_dict(), default=str))


if __name__ == "__main__":
    print("Environment variables you can set:")
    print("- TWITCH_OAUTH_TOKEN: Your Twitch OAuth token (sending only)")
    print("- OMNICHAT_COOKIES_KICK: Kick cookies (sending only)")
    print("- OMNICHAT_LOG_LEVEL: DEBUG, INFO, ...")
    print()

    try:
        asyncio.run(example())
    except KeyboardInterrupt:
        pass
