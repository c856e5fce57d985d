# Import the required package
import asyncio
import logging

from vrcoscquery.queryservice import OSCQueryServerConfig, OSCQueryService, build_and_run
from vrcoscquery.shared.node import OSCAccess


async def main():
    OSC_PORT = 9020  # Find a predefined open port for OSC

    # Set up an OSC server, likely with python-osc first...

    # /avatar has to exist before VRChat sends avatar parameters
    config = OSCQueryServerConfig("Test-Service", OSC_PORT, avatar_receiver=True)

    # Explicitly stops the service afterwards
    oscqs = await build_and_run(config)
    await oscqs.add_method("/avatar/parameters/Foo", OSCAccess.READWRITE_VALUE, "f")
    print(f"oscjson server on port {oscqs.http_port}, peer: {oscqs.peer}")
    await asyncio.sleep(30)
    await oscqs.stop()

    # Automatically stops the service when the block ends
    async with OSCQueryService(config) as oscqs:
        await asyncio.sleep(30)


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())
