"""Bot services: eligibility, commands, milestones, connections, EventSub."""
