"""
Admissions pipeline.

- Leads move through inquiry -> tour -> applied -> converted (or lost)
- Converting a lead creates the household, guardian, students and a draft application
- Applications move through review, interview and decision; accepted applications can be enrolled
"""
