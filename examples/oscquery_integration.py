# Import necessary modules, this example requires the python-osc package
import asyncio
import logging

from pythonosc.dispatcher import Dispatcher
from pythonosc.osc_server import AsyncIOOSCUDPServer
from pythonosc.udp_client import SimpleUDPClient

from vrcoscquery.query import OSCQueryClient, discover_vrchat_oscquery
from vrcoscquery.queryservice import OSCQueryServerConfig, OSCQueryService
from vrcoscquery.shared.errors import DiscoveryError
from vrcoscquery.utility import get_open_udp_port


# Function to handle OSC messages received by the OSC server
def osc_message_handler(address, *args):
    print(f"Received OSC message: {address}: {args}")


async def main():
    OSC_PORT = get_open_udp_port()

    # Set up OSC listener using python-osc
    dispatcher = Dispatcher()
    dispatcher.set_default_handler(osc_message_handler)
    osc_server = AsyncIOOSCUDPServer(
        ("127.0.0.1", OSC_PORT), dispatcher, asyncio.get_running_loop()
    )
    transport, _ = await osc_server.create_serve_endpoint()

    config = OSCQueryServerConfig(
        "Test-Service", OSC_PORT, avatar_receiver=True, verify_peer=False
    )
    try:
        async with OSCQueryService(config) as oscqs:
            print(f"OSCQueryService running on port {oscqs.http_port}")

            try:
                vrchat = await discover_vrchat_oscquery(timeout=10)
            except DiscoveryError as e:
                print(f"VRChat not found: {e}")
                return

            # Gathers info about the service, requests blocks so run it in a thread
            client = OSCQueryClient(vrchat)
            host_info = await asyncio.to_thread(client.get_host_info)
            if host_info is not None:
                print(f"Sent to OSC Host: {host_info.name} "
                      f"at {host_info.osc_ip}:{host_info.osc_port}")
                SimpleUDPClient(host_info.osc_ip, host_info.osc_port).send_message(
                    "/chatbox/input", ["hello from Test-Service", True]
                )

            # hold the service open
            await asyncio.sleep(60)
    finally:
        transport.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())
