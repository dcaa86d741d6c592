# Enterprise Autopilot - Dashboard
