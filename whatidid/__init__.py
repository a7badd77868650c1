"""
whatidid - Engineering impact reports from GitHub activity.

A CLI tool that:
1. Discovers every PR a user merged into main/master/release/* branches
2. Summarizes each PR into a feature description with an LLM
3. Merges near-duplicate features per project
4. Renders a Markdown or JSON report

Usage:
    whatidid generate -u <user> -s <YYYY-MM-DD> -t <YYYY-MM-DD>
    whatidid clear-cache
"""

__version__ = "0.1.0"
__author__ = "whatidid"
