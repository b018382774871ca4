"""Query log entries and writers that discard them or record them to the log, files or a database."""