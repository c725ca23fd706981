"""
Single entrypoint: validates the config, loads the username and key files,
authorises the bot through the browser (implicit grant) and then runs the
Twitch chat bot that sends the keys on !spgsend.
"""
import asyncio
import signal

import config
from bot import ChatBot, TwitchApi
from bot_auth import AuthError, AuthGateway
from distributor import InsufficientSupply, KeyDistributor
from records import FileUnavailable


def _register_cancel(handle):
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(handle.cancel()))
        except (NotImplementedError, RuntimeError):
            # Windows: Ctrl+C still ends the process, which also ends the listener
            print(f"[Auth] Cannot hook {sig.name} on this platform")


def _unregister_cancel():
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.remove_signal_handler(sig)
        except (NotImplementedError, RuntimeError):
            pass


async def main():
    print(
        "Warning! The input files will be modified by this program. "
        "Keys and users that have been processed will be prefixed with a # symbol. "
        "Please ensure this is not the only copy of either file, if it is, "
        "please press CTRL + C NOW and provide a copy instead."
    )

    print("Validating config")
    errors = config.validate_config()
    if errors:
        for error in errors:
            print(f"Config error: {error}")
        raise SystemExit(1)

    twitch = TwitchApi(config.TWITCH_CLIENT_ID)
    distributor = KeyDistributor(
        recipients_path=config.USERNAMES_FILE,
        codes_path=config.KEYS_FILE,
        template=config.MESSAGE_TEMPLATE,
        send_private_message=twitch.send_whisper,
        delay=config.send_delay(),
        placeholder=config.MESSAGE_PLACEHOLDER,
    )

    print("Loading users and keys files")
    try:
        distributor.prepare()
    except FileUnavailable as e:
        print(f"Failed to parse the given file: {e}")
        raise SystemExit(1)
    except InsufficientSupply as e:
        print(str(e))
        raise SystemExit(1)

    users, keys = distributor.preview()
    print("Here are the first 5 usernames we parsed: ", users)
    print("Here are the first 5 keys we parsed: ", keys)
    print("If these don't look correct, please press CTRL + C immediately")
    print(f"Bot continues to launch in {config.STARTUP_DELAY_SECONDS} seconds")
    await asyncio.sleep(config.STARTUP_DELAY_SECONDS)

    print("Authenticating the bot")
    gateway = AuthGateway(
        client_id=config.TWITCH_CLIENT_ID,
        callback_url=config.TWITCH_CALLBACK_URL,
        scopes=config.TWITCH_SCOPES,
        force_verify=config.TWITCH_FORCE_VERIFY,
    )
    handle = await gateway.start()
    _register_cancel(handle)
    try:
        async with handle:
            token = await handle.wait()
    except AuthError as e:
        print(f"Bot was not authorised to access the provided account: {e}")
        raise SystemExit(1)
    finally:
        _unregister_cancel()

    twitch.token = token
    bot = ChatBot(
        token=token,
        username=config.TWITCH_USERNAME,
        channels=config.TWITCH_CHANNELS,
        distributor=distributor,
        operators=config.TWITCH_OPERATORS,
    )
    await bot.run()


def cli():
    asyncio.run(main())


if __name__ == "__main__":
    cli()
