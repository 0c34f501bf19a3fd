"""
foobot Test Suite
=================

Test Organization
-----------------
- tests/unit/          : Fast unit tests (fake transport, temporary SQLite store)
- tests/integration/   : Store, built-in commands and full session wiring;
                         MySQL tests run against a testcontainer
- tests/fakes.py       : Scripted transport and chat line builders

Testing Philosophy
------------------
- The session state machine is tested with a virtual clock
- Runner tests use real, very short intervals
- Use pytest markers to categorize and selectively run tests
- Follow AAA pattern: Arrange, Act, Assert
"""
