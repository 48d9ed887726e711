"""
Customer CSV import. Create-if-new by intNr, otherwise skip.
"""
