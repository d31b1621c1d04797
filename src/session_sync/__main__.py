import asyncio

from dotenv import load_dotenv
from loguru import logger

from session_sync.app_config import load_json_config, parse_app_config, resolve_runtime_env
from session_sync.bootstrap import bootstrap_runtime
from session_sync.errors import SessionSyncError
from session_sync.shell import SessionShell


async def main() -> None:
    load_dotenv()

    env = resolve_runtime_env()
    app = parse_app_config(load_json_config(), env)
    runtime = await bootstrap_runtime(app, env)

    shell = SessionShell(
        runtime.registry,
        runtime.instance,
        runtime.notifier,
        show_reasoning=app.show_reasoning,
    )

    print("session-sync (type 'exit' to quit, '/help' for commands)")
    print(f"Instance: {runtime.instance.id} ({app.server_url}{app.proxy_path})")
    if runtime.catalog is not None:
        print(f"Catalog: {app.catalog_db_path}")
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")

    try:
        try:
            session_id = await shell.start()
            print(f"Session: {session_id}")
        except Exception as ex:
            logger.error(f"Failed to open a session: {ex}")
        print()

        while True:
            shell.flush_notifications()
            try:
                user_input = await asyncio.to_thread(input, "you> ")
            except (EOFError, KeyboardInterrupt):
                break

            trimmed = user_input.strip()

            if trimmed in ("exit", "quit"):
                break

            if not trimmed:
                continue

            try:
                await shell.handle(trimmed)
            except SessionSyncError as ex:
                print(f"sync> {ex}")
            except Exception as ex:
                logger.error(f"Unhandled error: {ex}")
    finally:
        shell.close()
        await runtime.close()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
