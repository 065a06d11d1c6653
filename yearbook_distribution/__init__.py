"""Yearbook distribution stations, coordinated over MQTT.

One coordinator process owns the ledger (students, distributions, payments,
action log) and pushes every committed change to the connected stations:
- distribution stations hand books out
- checker stations verify handoffs
- cash stations settle payments and make change
- the admin hub imports rosters, issues free books and wipes data

See `python -m yearbook_distribution.app -h` for how to run.
"""
