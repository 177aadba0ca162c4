"""Chat membership directory.

Services:
    - ChatDirectory: participant sets, get-or-create by exact participant
      match, and the latest-message pointer used by chat listings.
"""
