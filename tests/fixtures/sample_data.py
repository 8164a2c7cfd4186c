#!/usr/bin/env python3
"""
Sample Data Generator for PageSearch

Creates page lists in the format the search endpoint downloads: a JSON array
of {"id", "meta", "data"} objects.

Usage:
    python -m tests.fixtures.sample_data --count 50 --output data/pages.json
"""

import json
import random
from pathlib import Path
from typing import Any, Dict, List

# =============================================================================
# Sample Pages
# =============================================================================

# Four short pages sharing the token "thing"
BASIC_PAGES: List[Dict[str, Any]] = [
    {"id": "test3", "meta": {"url": "hi"}, "data": "something another more thing"},
    {"id": "test4", "meta": {"url": "hi"}, "data": "and another some thing"},
    {"id": "test5", "meta": {"url": "hi"}, "data": "one more  another little thing"},
    {"id": "test6", "meta": {"url": "hi"}, "data": "this is another big thing"},
]

TOPICS = [
    {
        "title": "Installing the command line tools",
        "section": "getting-started",
        "text": (
            "Download the archive for your platform and unpack it somewhere on "
            "your PATH. Run the version command to confirm the install worked. "
            "On macOS you may need to allow the binary in the security settings."
        ),
    },
    {
        "title": "Configuring a relay server",
        "section": "guides",
        "text": (
            "A relay forwards encrypted data between two peers that cannot reach "
            "each other directly. Start the relay with a port and a password, "
            "then point both peers at it with the relay flag."
        ),
    },
    {
        "title": "Troubleshooting slow transfers",
        "section": "faq",
        "text": (
            "Slow transfers are usually caused by a congested relay. Try running "
            "your own relay closer to both peers, or enable local discovery so "
            "peers on the same network connect directly."
        ),
    },
    {
        "title": "Sending whole folders",
        "section": "guides",
        "text": (
            "Folders are archived on the fly and unpacked on the receiving side.\n"
            "Empty folders are preserved, and symbolic links are sent as links "
            "rather than followed. Use the \"zip\" option to send one archive."
        ),
    },
]


def generate_page(topic: Dict[str, str], index: int) -> Dict[str, Any]:
    """Generate one page from a topic template."""
    return {
        "id": f"page-{index}",
        "meta": {
            "title": topic["title"],
            "section": topic["section"],
            "url": f"https://docs.example.com/{topic['section']}/{index}",
        },
        "data": topic["text"],
    }


def generate_pages(count: int = 20, seed: int = 0) -> List[Dict[str, Any]]:
    """Generate a list of sample pages cycling through the topics."""
    rng = random.Random(seed)
    pages = []
    for i in range(count):
        topic = TOPICS[i % len(TOPICS)]
        page = generate_page(topic, i)
        page["meta"]["views"] = str(rng.randint(1, 5000))
        pages.append(page)
    return pages


def save_pages(pages: List[Dict[str, Any]], output_path: str):
    """Save pages as a JSON array."""
    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, 'w') as f:
        json.dump(pages, f, ensure_ascii=False, indent=2)

    print(f"Saved {len(pages)} pages to {path}")


# =============================================================================
# CLI
# =============================================================================

if __name__ == '__main__':
    import argparse

    parser = argparse.ArgumentParser(description="Generate sample page data")
    parser.add_argument('--count', type=int, default=20, help="Number of pages to generate")
    parser.add_argument('--output', type=str, default='data/pages.json', help="Output file path")

    args = parser.parse_args()
    save_pages(generate_pages(args.count), args.output)
