# /run_ingestion.py

import os
from dotenv import load_dotenv

def main():
    """
    Main function to index the configured handbook into the knowledge graph.
    """
    load_dotenv()

    from core.config import settings
    from core.runtime import ingest_handbook

    if not os.getenv("GOOGLE_API_KEY") and not settings.GOOGLE_API_KEY:
        print("Warning: GOOGLE_API_KEY not found; dictionary extraction will fail if the handbook has no dictionary.")

    if not os.path.isdir(settings.HANDBOOK_DIR):
        print(f"Error: handbook directory '{settings.HANDBOOK_DIR}' not found. Set HANDBOOK_DIR in your .env file.")
        return

    summary = ingest_handbook(settings.HANDBOOK_DIR, force=True)
    print(f"\n--- Ingestion complete: {summary} ---")


if __name__ == '__main__':
    main()
