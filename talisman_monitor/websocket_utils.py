import asyncio
import logging

import aiohttp


log = logging.getLogger("TalismanMonitor.WebsocketUtils")


async def safe_send_json(ws, payload) -> bool:
    """
    Sends one node-table payload (`init`, `nodes` or `nodes_update`) to a browser.
    A browser that went away mid-send is dropped quietly; it gets a fresh `init` when it reconnects.
    """
    if ws.closed:
        return False
    try:
        await ws.send_json(payload)
    except (ConnectionResetError, aiohttp.client_exceptions.ClientConnectionResetError, RuntimeError) as e:
        log.debug(f"Dropped '{payload.get('type')}' payload for a closing client: {type(e).__name__}")
        return False
    except Exception:
        log.warning(f"Could not send '{payload.get('type')}' payload to a client:", exc_info=True)
        return False
    return True


async def robust_broadcast(websockets, payload) -> int:
    """Pushes one payload to every connected browser at once and returns how many got it."""
    recipients = list(websockets)
    if not recipients:
        return 0

    results = await asyncio.gather(*(safe_send_json(ws, payload) for ws in recipients),
                                   return_exceptions=True)
    successful = sum(1 for r in results if r is True)
    if successful < len(results):
        log.debug(f"'{payload.get('type')}' reached {successful} of {len(results)} clients")
    return successful
