"""Action builder: runs upgrade scripts and parses their structured output."""
