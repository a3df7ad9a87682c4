"""
NIBLET CHAT CLIENT - Command-line client for the Niblet API
===========================================================

PURPOSE:
This is a command-line interface for talking to a running Niblet server
without building a frontend. It shows the session restore, personality switch
and clear flows in action and is handy for development and debugging.

USAGE:
    python chat_cli.py

    Make sure the server is running first: python run.py

COMMANDS:
    /history             - View the transcript of the current session
    /personality <key>   - Switch to best-friend, professional-coach or tough-love
    /clear               - Start a new session with a fresh welcome message
    /wipe                - Delete all cached chat data
    /quit or /exit       - Exit
"""

import requests

try:
    from config import ASSISTANT_NAME, PERSONALITIES
except ImportError:
    ASSISTANT_NAME = "Niblet"
    PERSONALITIES = {}


# -----------------------------------------------------------------------------
# CONFIGURATION
# -----------------------------------------------------------------------------
# API base URL; change if your server runs on a different host or port.
BASE_URL = "http://localhost:8000"


# -----------------------------------------------------------------------------
# UI HELPERS
# -----------------------------------------------------------------------------

def print_header():
    print("\n" + "="*60)
    print(f"🥗 {ASSISTANT_NAME} - Meal Tracking Chat")
    print("="*60)
    print("\nCommands:")
    print("  /history - See chat history")
    print("  /personality <key> - Change personality")
    print("  /clear - Start new session")
    print("  /wipe - Delete cached chat data")
    print("  /quit - Exit")
    print("="*60 + "\n")


def get_user_input():
    """Get the user's input line, or None on Ctrl+C / Ctrl+D."""
    try:
        return input("\nYou: ").strip()
    except (KeyboardInterrupt, EOFError):
        return None


def format_message(msg):
    role = msg.get("role")
    if role == "user":
        label = "You"
    elif role == "system":
        label = "System"
    else:
        label = ASSISTANT_NAME
    return f"{label}: {msg.get('content', '')}"


def _error_text(response):
    # Show user-friendly message when available (e.g. 429 rate limit, 502 no response)
    try:
        err = response.json()
        if isinstance(err.get("detail"), str):
            return f"❌ {err['detail']}"
    except ValueError:
        pass
    return f"❌ Error: {response.status_code} - {response.text}"


# -----------------------------------------------------------------------------
# API CALLS
# -----------------------------------------------------------------------------

def send_message(message):
    """
    POST /chat and return the assistant's replies as text.

    Runs can include tool calls (logging a meal, looking up nutrition), so the
    timeout is generous.
    """
    try:
        response = requests.post(f"{BASE_URL}/chat", json={"message": message}, timeout=120)
        if response.status_code == 200:
            replies = response.json().get("messages", [])
            if not replies:
                return "(no reply)"
            return "\n".join(msg.get("content", "") for msg in replies)
        return _error_text(response)

    except requests.exceptions.ConnectionError:
        return "❌ Cannot connect to backend. Start it with: python run.py"
    except requests.exceptions.Timeout:
        return "❌ Request timed out. Try again."
    except requests.exceptions.RequestException as e:
        return f"❌ Error: {str(e)}"


def get_chat_history():
    """Fetch the transcript and format it as numbered lines."""
    try:
        response = requests.get(f"{BASE_URL}/chat/history", timeout=60)
        if response.status_code != 200:
            return _error_text(response)

        history = response.json()
        messages = history.get("messages", [])
        if not messages:
            return "No messages in this session"

        output = f"\n📜 Chat History ({len(messages)} messages, personality: {history.get('personality')}):\n"
        output += "-" * 60 + "\n"
        for i, msg in enumerate(messages, 1):
            output += f"{i}. {format_message(msg)}\n"
        output += "-" * 60 + "\n"
        return output

    except requests.exceptions.RequestException as e:
        return f"Error retrieving history: {str(e)}"


def change_personality(key):
    try:
        response = requests.post(f"{BASE_URL}/chat/personality", json={"personality": key}, timeout=60)
        if response.status_code == 200:
            return f"✅ {response.json().get('content')}"
        return _error_text(response)
    except requests.exceptions.RequestException as e:
        return f"❌ Error: {str(e)}"


def clear_chat():
    try:
        response = requests.post(f"{BASE_URL}/chat/clear", timeout=120)
        if response.status_code == 200:
            welcome = response.json().get("messages", [])
            return "\n".join(format_message(msg) for msg in welcome)
        return _error_text(response)
    except requests.exceptions.RequestException as e:
        return f"❌ Error: {str(e)}"


def wipe_data():
    try:
        response = requests.delete(f"{BASE_URL}/chat/data", timeout=30)
        if response.status_code == 200:
            return f"🗑️  Removed {response.json().get('removed', 0)} cached entries"
        return _error_text(response)
    except requests.exceptions.RequestException as e:
        return f"❌ Error: {str(e)}"


# -----------------------------------------------------------------------------
# MAIN LOOP
# -----------------------------------------------------------------------------

def main():
    """Accept messages and slash commands until /quit or /exit."""
    print_header()

    while True:
        user_input = get_user_input()
        if user_input is None or user_input in ["/quit", "/exit"]:
            print("\n👋 Goodbye!")
            break
        if not user_input:
            continue

        if user_input == "/history":
            print(get_chat_history())
        elif user_input.startswith("/personality"):
            parts = user_input.split(maxsplit=1)
            if len(parts) < 2:
                print(f"❌ Usage: /personality <{'|'.join(PERSONALITIES) or 'key'}>")
            else:
                print(change_personality(parts[1].strip()))
        elif user_input == "/clear":
            print("\n🔄 Starting a new session...")
            print(clear_chat())
        elif user_input == "/wipe":
            print(wipe_data())
        elif user_input.startswith("/"):
            print(f"❌ Unknown command: {user_input}")
        else:
            print(f"🥗 {ASSISTANT_NAME}: ", end="", flush=True)
            print(send_message(user_input))


# Run the interactive loop when this file is executed (python chat_cli.py).
if __name__ == "__main__":
    main()
