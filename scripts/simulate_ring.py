#!/usr/bin/env python3
"""
Walk one call through ring -> claim -> park -> unpark against a running server.
Run the server first: uvicorn switchboard.main:app --reload
Leave TWILIO_AUTH_TOKEN unset so the webhooks accept unsigned requests.
Park/unpark need Twilio REST credentials and a live CallSid; without them
they report provider_unavailable (502), which is also worth seeing.
"""

import sys
import time

import requests

BASE_URL = "http://127.0.0.1:8000"
AGENTS = ["alice", "bob", "carol"]


def show(label, response):
    print(f"   {label}: {response.status_code} {response.json()}")


def simulate():
    print("Simulating a call through Switchboard...\n")

    print("1. Registering agents...")
    for agent_id in AGENTS:
        requests.put(f"{BASE_URL}/agents/{agent_id}", json={"display_name": agent_id.title()})
        requests.post(f"{BASE_URL}/agents/{agent_id}/availability", json={"available": True})
    show("Eligible", requests.get(f"{BASE_URL}/agents/eligible"))

    print("\n2. Inbound call arrives...")
    call_sid = f"CA-sim-{int(time.time())}"
    response = requests.post(
        f"{BASE_URL}/twilio/voice",
        data={"CallSid": call_sid, "From": "+15550001111", "To": "+15559990000"},
    )
    print(f"   TwiML:\n{response.text}")
    call = next(c for c in requests.get(f"{BASE_URL}/calls").json() if c["provider_call_ref"] == call_sid)
    call_id = call["id"]

    print("\n3. Everyone tries to answer at once...")
    for agent_id in AGENTS:
        show(agent_id, requests.post(f"{BASE_URL}/calls/{call_id}/claim", json={"agent_id": agent_id}))

    owner = requests.get(f"{BASE_URL}/calls/{call_id}").json()["owner_agent_id"]
    print(f"\n4. {owner} parks the call...")
    response = requests.post(f"{BASE_URL}/calls/{call_id}/park", json={"agent_id": owner})
    show("Park", response)
    if response.status_code != 200:
        print("\nStopping here: parking needs a live Twilio call.")
        return

    parked_call_id = response.json()["parked_call_id"]
    others = [a for a in AGENTS if a != owner]
    print(f"\n5. {others[0]} and {others[1]} both try to pick it up...")
    for agent_id in others:
        show(agent_id, requests.post(f"{BASE_URL}/parked/{parked_call_id}/unpark", json={"target_agent_id": agent_id}))

    print("\n6. Event feeds:")
    for agent_id in AGENTS:
        view = requests.get(f"{BASE_URL}/agents/{agent_id}/view").json()
        print(f"   {agent_id}: incoming={view['incoming']} active={view['active_call_id']} parked={view['parked']}")

    print("\nDone.")


if __name__ == "__main__":
    try:
        simulate()
    except requests.exceptions.ConnectionError:
        print("Error: Could not connect to server.")
        print("Please start the server first:")
        print("  uvicorn switchboard.main:app --reload")
        sys.exit(1)
