"""
ExpenseSync data package: pandas views of the local snapshot.

- :mod:`ExpenseSync.data.data` – Record tables (:func:`ExpenseSync.data.data.frame`) and the dashboard
  figures (:func:`ExpenseSync.data.data.get_stats`) computed from transactions.
"""
