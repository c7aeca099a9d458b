"""
Ballot casting and tallying services for a single election.

Subpackages:
- shared: data model, validation helpers and the error taxonomy
- storage: the ballot store contract and its PostgreSQL / in-process backends
- casting: the vote casting transaction
- aggregation: results and summary statistics
- ballot_api: HTTP surface
"""

__version__ = '2.0.0'
