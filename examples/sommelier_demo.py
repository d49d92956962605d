"""Minimal demonstration of the sommelier chat service."""

from somm_core.api.service import get_default_service

if __name__ == "__main__":
    service = get_default_service()
    service.start_conversation()
    service.subscribe(lambda m: print(f"[{m.role}] {m.content}") if m.role == "user" else None)
    wine = {"name": "Estate Pinot Noir", "vintage": 2021, "region": "Willamette Valley"}
    service.send_turn("What should I eat with this wine?", wine=wine).result()
    print("Sommelier:", service.transcript.last(role="assistant").content)
    service.shutdown()
