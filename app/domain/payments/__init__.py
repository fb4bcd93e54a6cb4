"""
Payments Domain

Invoice lifecycle for workshop registrations paid through Robokassa:
- repository.py       - Invoice store; every write is a conditional UPDATE
- state_machine.py    - pending -> paid/failed/cancelled transitions
- refund_service.py   - Refund window, initiation and status reconciliation
- router.py           - Gateway webhooks and invoice/refund endpoints
"""
