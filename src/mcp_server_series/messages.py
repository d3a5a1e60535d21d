"""User-facing message texts sent to recipients."""

from __future__ import annotations

PLEASE_WAIT = "⏳ Please wait, we are still processing your previous request..."

GENERIC_FAILURE = (
    "❌ Sorry, an error occurred while processing your request.\n\n"
    "Please try again later or contact support."
)

EMPTY_COLLECTION = (
    "❌ No videos found for this series.\n\n"
    "Please contact support if you believe this is an error."
)

ALL_DELIVERED = "✅ All videos sent successfully!\n\nEnjoy watching! 🎬"

USAGE_HINT = (
    "📺 Send a series code (e.g., AB001) to watch.\n\n"
    'Type "list" to see all available series.\n'
    'Type "help" for more information.'
)

HELP_TEXT = """
📖 *Customer Support Bot - Help*

*Available Commands:*
• list - Show all available series
• help - Show this help message
• [Series Code] - Watch a series (e.g., AB001)

*How to use:*
1. Type "list" to see all available series
2. Send a series code (e.g., AB001) to start watching
3. The bot will send all videos in order
4. Enjoy! 🎬

*Features:*
⚡ Instant delivery for cached series
📹 Videos sent in correct order
""".strip()


def not_found(collection_id: str) -> str:
    return (
        f'❌ Sorry, series "{collection_id}" not found.\n\n'
        "Please check the series code and try again."
    )


def found(collection_id: str) -> str:
    return (
        f"✅ Found series: {collection_id}\n\n"
        "🔍 Fetching videos from our library...\n"
        "This may take a few moments."
    )


def listing_ready(count: int, fully_cached: bool) -> str:
    if fully_cached:
        return f"📺 Found {count} video(s)! (Cached ⚡)\n\n🚀 Sending videos instantly..."
    return (
        f"📺 Found {count} video(s)!\n\n"
        "⏳ Downloading and caching for faster future access..."
    )


def item_caption(position: int, total: int, caption: str) -> str:
    header = f"📹 Video {position}/{total}"
    return f"{header}\n\n{caption}" if caption else header


def item_skipped(position: int) -> str:
    return f"⚠️ Error sending video {position}. Skipping to next..."


def partial_delivery(delivered: int, total: int) -> str:
    return f"⚠️ Sent {delivered} of {total} video(s). Some videos could not be sent."


def series_list(collection_ids: list[str]) -> str:
    if not collection_ids:
        return "📺 No series are available right now."
    lines = "\n".join(f"{n}. {code}" for n, code in enumerate(collection_ids, 1))
    return (
        f"📺 *Available Series*\n\n{lines}\n\n"
        f"*How to watch:*\nSimply send the series code (e.g., {collection_ids[0]})\n\n"
        f"Total series available: {len(collection_ids)}"
    )
